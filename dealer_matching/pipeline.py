"""
Main Pipeline module for Dealer Matching.

Orchestrates the full data flow for one dealer:
1. Score → Base score from explicit preferences
2. Boost → Personalization from learned preferences
3. Store → Persist the VehicleMatch (once per dealer/listing)
4. Gate → Daily view quota before a match is opened
5. Learn → Record interactions and update the learned profile
6. Explain → Human-readable score breakdown
7. Report → Dashboard metrics over matches and recent interactions

This is the main entry point for the API, the scheduler and the CLI.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from .config import AppConfig, get_app_config
from .db import get_db
from .errors import MatchNotFoundError, OwnershipError, ValidationError
from .explanation import explain
from .learning import LearningProgress, PreferenceLearner, learning_progress
from .models import (
    INTERACTION_FLAGS,
    MATCH_SORT_ORDERS,
    DealerPreferences,
    Interaction,
    InteractionType,
    LearnedPreferences,
    MatchStats,
    VehicleListing,
    VehicleMatch,
    utcnow,
)
from .quota import QuotaDecision, QuotaGuard, UsageStats
from .scoring import MatchScorer

logger = logging.getLogger(__name__)

# Interactions summarised in the metrics readout
RECENT_ACTIVITY_WINDOW = 100

# Interactions before the dashboard reports learned data
LEARNING_DATA_THRESHOLD = 5


# =============================================================================
# DEALER METRICS
# =============================================================================

@dataclass
class DealerMetrics:
    """Personalization readout for the dealer dashboard."""
    learned: Optional[LearnedPreferences]
    match_stats: MatchStats = field(default_factory=MatchStats)
    interactions_by_type: dict[str, int] = field(default_factory=dict)
    total_recent: int = 0
    progress: Optional[LearningProgress] = None

    @property
    def save_rate(self) -> float:
        """Saves as a percentage of all interactions."""
        if self.learned is None or self.learned.total_interactions == 0:
            return 0.0
        return round(self.learned.total_saves / self.learned.total_interactions * 100, 1)

    @property
    def has_learning_data(self) -> bool:
        return self.learned is not None and self.learned.total_interactions >= LEARNING_DATA_THRESHOLD

    def to_dict(self) -> dict:
        preferences = None
        if self.learned is not None:
            preferences = {
                "total_interactions": self.learned.total_interactions,
                "total_saves": self.learned.total_saves,
                "total_skips": self.learned.total_skips,
                "save_rate": self.save_rate,
                "learned_makes": dict(self.learned.learned_makes),
                "learned_models": dict(self.learned.learned_models),
                "price_range": self.learned.learned_price_range.to_dict(),
                "mileage_range": self.learned.learned_mileage_range.to_dict(),
                "last_updated": self.learned.last_updated.isoformat() if self.learned.last_updated else None,
            }
        return {
            "preferences": preferences,
            "match_stats": self.match_stats.to_dict(),
            "recent_activity": {
                "interactions_by_type": dict(self.interactions_by_type),
                "total_recent": self.total_recent,
            },
            "has_learning_data": self.has_learning_data,
            "learning_progress": self.progress.to_dict() if self.progress else None,
        }


# =============================================================================
# MATCHING SERVICE
# =============================================================================

class MatchingService:
    """
    Ties scorer, learner, quota guard and explanation builder to storage.

    Usage:
        service = MatchingService()
        match = service.score_listing(dealer_id, listing)
        service.record_interaction(dealer_id, "SAVE", match.match_id)
    """

    def __init__(
        self,
        db=None,
        config: Optional[AppConfig] = None,
        scorer: Optional[MatchScorer] = None,
        learner: Optional[PreferenceLearner] = None,
        quota: Optional[QuotaGuard] = None,
    ):
        self.db = db or get_db()
        self.config = config or get_app_config()
        self.scorer = scorer or MatchScorer()
        self.learner = learner or PreferenceLearner(db=self.db, config=self.config)
        self.quota = quota or QuotaGuard(db=self.db)

    # =========================================================================
    # SCORING
    # =========================================================================

    def get_preferences(self, dealer_id: str) -> DealerPreferences:
        """Stored preferences, or the all-defaults set for a new dealer."""
        preferences = self.db.get_dealer_preferences(dealer_id)
        return preferences or DealerPreferences(dealer_id=dealer_id)

    def score_listing(
        self,
        dealer_id: str,
        listing: VehicleListing,
        preferences: Optional[DealerPreferences] = None,
    ) -> VehicleMatch:
        """
        Score a listing for a dealer and persist the match.

        A dealer/listing pair is scored once; later calls return the stored
        match unchanged.
        """
        existing = self.db.get_match_for_listing(dealer_id, listing.listing_id)
        if existing:
            logger.debug(f"Match already exists for {dealer_id} / {listing.listing_id}")
            return existing

        preferences = (preferences or self.get_preferences(dealer_id)).validate()

        base_score, breakdown = self.scorer.score(listing, preferences)
        disqualified = self.scorer.is_disqualified(listing, preferences)
        boost = self.learner.boost(dealer_id, listing, disqualified=disqualified)

        match = VehicleMatch(
            match_id=f"match_{uuid.uuid4().hex[:12]}",
            dealer_id=dealer_id,
            listing=listing,
            base_score=base_score,
            personalization_boost=boost,
            score_breakdown=breakdown,
        )
        return self.db.create_match(match)

    def match_listings(
        self,
        dealer_id: str,
        listings: list[VehicleListing],
        preferences: Optional[DealerPreferences] = None,
    ) -> list[VehicleMatch]:
        """
        Score a batch of listings for one dealer.

        Listings the classifier marked AVOID, or from sites the dealer has
        not enabled, are left out.

        Returns:
            Matches sorted by final score, best first
        """
        preferences = (preferences or self.get_preferences(dealer_id)).validate()
        enabled_sites = {site.lower() for site in preferences.enabled_sites}

        matches = []
        for listing in listings:
            if (listing.verdict or "").upper() == "AVOID":
                continue
            if enabled_sites and (listing.source_site or "").lower() not in enabled_sites:
                continue
            matches.append(self.score_listing(dealer_id, listing, preferences))

        matches.sort(key=lambda m: m.final_score, reverse=True)

        logger.info(f"Scored {len(matches)}/{len(listings)} listings for dealer {dealer_id}")
        return matches

    def get_matches(
        self,
        dealer_id: str,
        min_score: int = 0,
        saved_only: bool = False,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "final_score",
    ) -> list[VehicleMatch]:
        """
        A page of the dealer's matches.

        Raises:
            ValidationError: sort_by is not final_score, created_at or price
        """
        if sort_by not in MATCH_SORT_ORDERS:
            valid = ", ".join(MATCH_SORT_ORDERS)
            raise ValidationError(f"Invalid sortBy {sort_by!r}. Must be one of: {valid}")
        return self.db.get_matches(
            dealer_id,
            min_score=min_score,
            saved_only=saved_only,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
        )

    def count_matches(self, dealer_id: str, min_score: int = 0) -> int:
        return self.db.count_matches(dealer_id, min_score=min_score)

    def get_owned_match(self, dealer_id: str, match_id: str) -> VehicleMatch:
        """
        Raises:
            MatchNotFoundError: no such match
            OwnershipError: the match belongs to another dealer
        """
        match = self.db.get_match(match_id)
        if match is None:
            raise MatchNotFoundError(f"Match {match_id} not found")
        if match.dealer_id != dealer_id:
            raise OwnershipError(f"Match {match_id} does not belong to dealer {dealer_id}")
        return match

    # =========================================================================
    # INTERACTIONS
    # =========================================================================

    def record_interaction(
        self,
        dealer_id: str,
        interaction_type,
        vehicle_match_id: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Interaction:
        """
        Validate, append and learn from one interaction.

        The interaction is stored before learning. If the learned profile
        cannot be updated the interaction is still kept and the profile
        catches up on the next rebuild.

        Raises:
            ValidationError: unknown type or malformed duration/metadata
            MatchNotFoundError / OwnershipError: bad vehicle_match_id
        """
        interaction_type = InteractionType.parse(interaction_type)
        if duration_seconds is not None and (not isinstance(duration_seconds, int) or duration_seconds < 0):
            raise ValidationError("durationSeconds must be a non-negative integer")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        if vehicle_match_id:
            self.get_owned_match(dealer_id, vehicle_match_id)

        interaction = Interaction(
            interaction_id=f"int_{uuid.uuid4().hex[:12]}",
            dealer_id=dealer_id,
            interaction_type=interaction_type,
            vehicle_match_id=vehicle_match_id or None,
            duration_seconds=duration_seconds,
            metadata=metadata,
        )
        self.db.append_interaction(interaction)

        flag = INTERACTION_FLAGS.get(interaction_type)
        if vehicle_match_id and flag:
            try:
                self.db.update_match_flags(vehicle_match_id, dealer_id, {flag: True})
            except Exception as e:
                logger.warning(f"Failed to flag match {vehicle_match_id} as {flag}: {e}")

        try:
            self.learner.observe(dealer_id, interaction)
        except Exception as e:
            logger.warning(f"Learned preferences for {dealer_id} not updated yet: {e}")

        return interaction

    def get_interactions(
        self,
        dealer_id: str,
        interaction_type=None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Interaction]:
        parsed = InteractionType.parse(interaction_type) if interaction_type else None
        return self.db.get_interactions(dealer_id, interaction_type=parsed, limit=limit, offset=offset)

    def interaction_stats(self, dealer_id: str) -> dict:
        learned = self.learner.get_learned(dealer_id)
        if learned is None:
            return {"total_interactions": 0, "total_saves": 0, "total_skips": 0}
        return {
            "total_interactions": learned.total_interactions,
            "total_saves": learned.total_saves,
            "total_skips": learned.total_skips,
        }

    # =========================================================================
    # QUOTA-GATED VIEWING
    # =========================================================================

    def view_match(self, dealer_id: str, match_id: str, plan) -> tuple[QuotaDecision, Optional[VehicleMatch]]:
        """
        Open a match if today's plan allowance permits it.

        Returns:
            (decision, the viewed match or None when the limit is reached)
        """
        self.get_owned_match(dealer_id, match_id)

        decision = self.quota.check_and_consume(dealer_id, plan)
        if not decision.allowed:
            return decision, None

        self.record_interaction(dealer_id, InteractionType.VIEW, vehicle_match_id=match_id)
        return decision, self.db.get_match(match_id)

    def usage_stats(self, dealer_id: str, plan) -> UsageStats:
        return self.quota.usage_stats(dealer_id, plan)

    # =========================================================================
    # EXPLANATION & PROGRESS
    # =========================================================================

    def explain_match(self, dealer_id: str, match_id: str) -> list[str]:
        """Explanation lines for one of the dealer's matches."""
        match = self.get_owned_match(dealer_id, match_id)
        try:
            learned = self.learner.get_learned(dealer_id)
        except Exception as e:
            logger.warning(f"Explaining {match_id} without learned preferences: {e}")
            learned = None
        return explain(match, learned, config=self.config)

    def learning_progress(self, dealer_id: str) -> LearningProgress:
        return self.learner.progress(dealer_id)

    def dealer_metrics(self, dealer_id: str) -> DealerMetrics:
        """
        Dashboard aggregate of a dealer's personalization.

        Match averages and recent activity are best effort: a failed query
        is logged and reported as empty.
        """
        learned = self.learner.get_learned(dealer_id)

        try:
            match_stats = self.db.get_match_stats(dealer_id)
        except Exception as e:
            logger.warning(f"Failed to get match stats for {dealer_id}: {e}")
            match_stats = MatchStats()

        try:
            recent = self.db.get_interactions(dealer_id, limit=RECENT_ACTIVITY_WINDOW)
        except Exception as e:
            logger.warning(f"Failed to get recent interactions for {dealer_id}: {e}")
            recent = []

        by_type = Counter(i.interaction_type.value for i in recent)

        return DealerMetrics(
            learned=learned,
            match_stats=match_stats,
            interactions_by_type=dict(by_type),
            total_recent=len(recent),
            progress=learning_progress(learned),
        )

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def rebuild_recent(self, days: int = 1) -> int:
        """
        Rebuild learned profiles of dealers active in the last `days` days.

        Returns:
            Number of profiles rebuilt
        """
        since = utcnow() - timedelta(days=days)
        dealer_ids = self.db.get_dealers_with_interactions_since(since)

        rebuilt = 0
        for dealer_id in dealer_ids:
            try:
                self.learner.rebuild(dealer_id)
                rebuilt += 1
            except Exception as e:
                logger.error(f"Rebuild failed for dealer {dealer_id}: {e}")

        logger.info(f"Rebuilt {rebuilt}/{len(dealer_ids)} learned profiles")
        return rebuilt


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Dealer Matching Engine")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the HTTP API"
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Run the maintenance scheduler (blocking)"
    )
    parser.add_argument(
        "--rebuild",
        metavar="DEALER_ID",
        help="Rebuild one dealer's learned preferences from the interaction log"
    )
    parser.add_argument(
        "--rebuild-recent",
        metavar="DAYS",
        type=int,
        help="Rebuild learned preferences of dealers active in the last DAYS days"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.serve:
        from .api import run_server
        config = get_app_config()
        run_server(config.api_host, config.api_port)
    elif args.schedule:
        from .scheduler import start_scheduler
        start_scheduler()
    elif args.rebuild:
        learned = PreferenceLearner().rebuild(args.rebuild)
        print(f"Rebuilt: {learned.to_dict()}")
    elif args.rebuild_recent is not None:
        count = MatchingService().rebuild_recent(days=args.rebuild_recent)
        print(f"Rebuilt {count} learned profiles")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
