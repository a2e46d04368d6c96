"""
Supabase database integration module.

Handles all database operations:
- Dealer preferences (explicit filters)
- Learned preferences with optimistic versioning
- The append-only interaction log
- Vehicle matches and their interaction flags
- Windowed usage counters (daily views, demo rate limit)

Tables and functions required (see setup_supabase.sql):
- dealer_preferences: Explicit dealer filters
- dealer_learned_preferences: One learned profile per dealer
- dealer_interactions: Append-only interaction log
- vehicle_matches: Scored dealer/listing pairs
- usage_counters: Count per (subject, window_start)
- consume_window_quota(): Atomic increment-if-below-limit
"""

import logging
from datetime import datetime
from typing import Optional
from supabase import create_client, Client

from .config import get_supabase_config
from .models import (
    MATCH_SORT_ORDERS,
    DealerPreferences,
    Interaction,
    InteractionType,
    LearnedPreferences,
    MatchStats,
    VehicleMatch,
    utcnow,
)

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class Database:
    """
    Supabase database client wrapper.

    Provides every storage operation the matching engine needs. The two
    operations that must be atomic across processes are pushed down to
    Postgres: the quota counter (a SQL function) and learned-profile saves
    (a version compare-and-swap).
    """

    def __init__(self):
        """Initialize Supabase client."""
        config = get_supabase_config()
        if not config.url or not config.key:
            raise ValueError("Supabase URL and key must be set in environment variables")
        self._client: Client = create_client(config.url, config.key)

    @property
    def client(self) -> Client:
        """Get the Supabase client."""
        return self._client

    # =========================================================================
    # DEALER PREFERENCE OPERATIONS
    # =========================================================================

    def get_dealer_preferences(self, dealer_id: str) -> Optional[DealerPreferences]:
        """Get a dealer's explicit preferences, or None if never saved."""
        result = self._client.table("dealer_preferences").select("*").eq("dealer_id", dealer_id).execute()
        return DealerPreferences.from_dict(result.data[0]) if result.data else None

    def upsert_dealer_preferences(self, preferences: DealerPreferences) -> None:
        """Insert or update a dealer's explicit preferences."""
        preferences.validate()
        self._client.table("dealer_preferences").upsert(
            preferences.to_dict(), on_conflict="dealer_id"
        ).execute()
        logger.info(f"Saved preferences for dealer {preferences.dealer_id}")

    # =========================================================================
    # LEARNED PREFERENCE OPERATIONS
    # =========================================================================

    def get_learned_preferences(self, dealer_id: str) -> Optional[LearnedPreferences]:
        """Get a dealer's learned profile."""
        result = self._client.table("dealer_learned_preferences").select("*").eq("dealer_id", dealer_id).execute()
        return LearnedPreferences.from_dict(result.data[0]) if result.data else None

    def save_learned_preferences(
        self,
        preferences: LearnedPreferences,
        expected_version: Optional[int],
    ) -> bool:
        """
        Store a learned profile if nobody else changed it first.

        Args:
            preferences: The new profile (its version already incremented)
            expected_version: Version read before computing the update,
                None if no profile existed

        Returns:
            True if stored, False if the stored version moved on
        """
        row = preferences.to_dict()

        if expected_version is None:
            try:
                self._client.table("dealer_learned_preferences").insert(row).execute()
                return True
            except Exception as e:
                if UNIQUE_VIOLATION in str(e):
                    return False
                raise

        result = (
            self._client.table("dealer_learned_preferences")
            .update(row)
            .eq("dealer_id", preferences.dealer_id)
            .eq("version", expected_version)
            .execute()
        )
        return bool(result.data)

    # =========================================================================
    # INTERACTION OPERATIONS
    # =========================================================================

    def append_interaction(self, interaction: Interaction) -> Interaction:
        """Append an interaction to the log."""
        self._client.table("dealer_interactions").insert(interaction.to_dict()).execute()
        logger.info(
            f"Recorded {interaction.interaction_type.value} for dealer {interaction.dealer_id}: "
            f"{interaction.interaction_id}"
        )
        return interaction

    def get_interactions(
        self,
        dealer_id: str,
        interaction_type: Optional[InteractionType] = None,
        ascending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Interaction]:
        """Get a dealer's interactions, newest first unless ascending."""
        query = (
            self._client.table("dealer_interactions")
            .select("*")
            .eq("dealer_id", dealer_id)
            .order("created_at", desc=not ascending)
        )
        if interaction_type:
            query = query.eq("interaction_type", interaction_type.value)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)

        result = query.execute()
        return [Interaction.from_dict(data) for data in result.data]

    def get_dealers_with_interactions_since(self, since: datetime) -> list[str]:
        """Dealer ids with at least one interaction after `since`."""
        result = (
            self._client.table("dealer_interactions")
            .select("dealer_id")
            .gt("created_at", since.isoformat())
            .execute()
        )
        return sorted({row["dealer_id"] for row in result.data})

    # =========================================================================
    # VEHICLE MATCH OPERATIONS
    # =========================================================================

    def create_match(self, match: VehicleMatch) -> VehicleMatch:
        """
        Insert a new vehicle match.

        If a concurrent request already stored a match for the same
        dealer/listing pair, that stored match is returned instead.
        """
        try:
            self._client.table("vehicle_matches").insert(match.to_dict()).execute()
        except Exception as e:
            if UNIQUE_VIOLATION not in str(e):
                raise
            existing = self.get_match_for_listing(match.dealer_id, match.listing.listing_id)
            if existing is None:
                raise
            logger.debug(f"Match for {match.dealer_id} / {match.listing.listing_id} created concurrently")
            return existing

        logger.info(f"Created match {match.match_id} for dealer {match.dealer_id} (score {match.final_score})")
        return match

    def get_match(self, match_id: str) -> Optional[VehicleMatch]:
        """Get a match by ID."""
        result = self._client.table("vehicle_matches").select("*").eq("match_id", match_id).execute()
        return VehicleMatch.from_dict(result.data[0]) if result.data else None

    def get_match_for_listing(self, dealer_id: str, listing_id: str) -> Optional[VehicleMatch]:
        """Get the match for a dealer/listing pair, if already scored."""
        result = (
            self._client.table("vehicle_matches")
            .select("*")
            .eq("dealer_id", dealer_id)
            .eq("listing_id", listing_id)
            .execute()
        )
        return VehicleMatch.from_dict(result.data[0]) if result.data else None

    def update_match_flags(self, match_id: str, dealer_id: str, flags: dict) -> Optional[VehicleMatch]:
        """Set interaction flags on a match owned by `dealer_id`."""
        updates = dict(flags)
        updates["updated_at"] = utcnow().isoformat()
        result = (
            self._client.table("vehicle_matches")
            .update(updates)
            .eq("match_id", match_id)
            .eq("dealer_id", dealer_id)
            .execute()
        )
        return VehicleMatch.from_dict(result.data[0]) if result.data else None

    def get_matches(
        self,
        dealer_id: str,
        min_score: int = 0,
        saved_only: bool = False,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "final_score",
    ) -> list[VehicleMatch]:
        """Get a dealer's matches, best final score first unless sort_by says otherwise."""
        column, descending = MATCH_SORT_ORDERS[sort_by]
        query = self._client.table("vehicle_matches").select("*").eq("dealer_id", dealer_id)

        if min_score > 0:
            query = query.gte("final_score", min_score)
        if saved_only:
            query = query.eq("saved", True)

        result = query.order(column, desc=descending).range(offset, offset + limit - 1).execute()
        return [VehicleMatch.from_dict(data) for data in result.data]

    def count_matches(self, dealer_id: str, min_score: int = 0) -> int:
        """Number of a dealer's matches at or above min_score."""
        query = self._client.table("vehicle_matches").select("match_id", count="exact").eq("dealer_id", dealer_id)
        if min_score > 0:
            query = query.gte("final_score", min_score)
        return query.execute().count or 0

    def get_match_stats(self, dealer_id: str) -> MatchStats:
        """Score averages over all of a dealer's matches."""
        result = (
            self._client.table("vehicle_matches")
            .select("base_score, personalization_boost")
            .eq("dealer_id", dealer_id)
            .execute()
        )
        return MatchStats.from_scores([
            (int(row["base_score"]), int(row["personalization_boost"] or 0)) for row in result.data
        ])

    # =========================================================================
    # USAGE COUNTER OPERATIONS
    # =========================================================================

    def consume_window_quota(self, subject: str, window_start: datetime, limit: int) -> tuple[bool, int]:
        """
        Atomically take one unit from a windowed counter.

        Returns:
            (allowed, count after the call)
        """
        result = self._client.rpc("consume_window_quota", {
            "p_subject": subject,
            "p_window_start": window_start.isoformat(),
            "p_limit": limit,
        }).execute()

        row = result.data[0] if isinstance(result.data, list) else result.data
        return bool(row["allowed"]), int(row["used"])

    def get_window_count(self, subject: str, window_start: datetime) -> int:
        """Current count of a windowed counter (0 if never touched)."""
        result = (
            self._client.table("usage_counters")
            .select("count")
            .eq("subject", subject)
            .eq("window_start", window_start.isoformat())
            .execute()
        )
        return int(result.data[0]["count"]) if result.data else 0

    def reset_window(self, subject: str, window_start: datetime) -> None:
        """Delete a windowed counter."""
        (
            self._client.table("usage_counters")
            .delete()
            .eq("subject", subject)
            .eq("window_start", window_start.isoformat())
            .execute()
        )


# Global database instance (lazy loaded)
_db: Optional[Database] = None


def get_db() -> Database:
    """Get database instance (singleton)."""
    global _db
    if _db is None:
        _db = Database()
    return _db
