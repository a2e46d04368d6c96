"""
In-process storage backend.

Implements the same operations as `db.Database` on plain dicts guarded by a
lock. Used for tests and local runs without Supabase; atomicity holds only
within one process.
"""

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional

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


class InMemoryDatabase:
    """Dict-backed stand-in for the Supabase database."""

    def __init__(self):
        self._lock = threading.Lock()
        self._dealer_preferences: dict[str, DealerPreferences] = {}
        self._learned: dict[str, LearnedPreferences] = {}
        self._interactions: list[Interaction] = []
        self._matches: dict[str, VehicleMatch] = {}
        self._counters: dict[tuple[str, datetime], int] = {}

    # Dealer preferences

    def get_dealer_preferences(self, dealer_id: str) -> Optional[DealerPreferences]:
        with self._lock:
            prefs = self._dealer_preferences.get(dealer_id)
            return copy.deepcopy(prefs) if prefs else None

    def upsert_dealer_preferences(self, preferences: DealerPreferences) -> None:
        preferences.validate()
        with self._lock:
            self._dealer_preferences[preferences.dealer_id] = copy.deepcopy(preferences)

    # Learned preferences

    def get_learned_preferences(self, dealer_id: str) -> Optional[LearnedPreferences]:
        with self._lock:
            learned = self._learned.get(dealer_id)
            return copy.deepcopy(learned) if learned else None

    def save_learned_preferences(
        self,
        preferences: LearnedPreferences,
        expected_version: Optional[int],
    ) -> bool:
        with self._lock:
            current = self._learned.get(preferences.dealer_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            self._learned[preferences.dealer_id] = copy.deepcopy(preferences)
            return True

    # Interactions

    def append_interaction(self, interaction: Interaction) -> Interaction:
        with self._lock:
            self._interactions.append(interaction)
        return interaction

    def get_interactions(
        self,
        dealer_id: str,
        interaction_type: Optional[InteractionType] = None,
        ascending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Interaction]:
        with self._lock:
            rows = [
                i for i in self._interactions
                if i.dealer_id == dealer_id
                and (interaction_type is None or i.interaction_type == interaction_type)
            ]
        # log order breaks created_at ties
        rows = sorted(enumerate(rows), key=lambda pair: (pair[1].created_at, pair[0]), reverse=not ascending)
        rows = [interaction for _, interaction in rows]
        if limit is not None:
            rows = rows[offset:offset + limit]
        return rows

    def get_dealers_with_interactions_since(self, since: datetime) -> list[str]:
        with self._lock:
            return sorted({i.dealer_id for i in self._interactions if i.created_at > since})

    # Vehicle matches

    def create_match(self, match: VehicleMatch) -> VehicleMatch:
        """Insert unless the dealer/listing pair exists; returns the stored match."""
        with self._lock:
            for existing in self._matches.values():
                if existing.dealer_id == match.dealer_id and existing.listing.listing_id == match.listing.listing_id:
                    return copy.deepcopy(existing)
            self._matches[match.match_id] = copy.deepcopy(match)
        return match

    def get_match(self, match_id: str) -> Optional[VehicleMatch]:
        with self._lock:
            match = self._matches.get(match_id)
            return copy.deepcopy(match) if match else None

    def get_match_for_listing(self, dealer_id: str, listing_id: str) -> Optional[VehicleMatch]:
        with self._lock:
            for match in self._matches.values():
                if match.dealer_id == dealer_id and match.listing.listing_id == listing_id:
                    return copy.deepcopy(match)
        return None

    def update_match_flags(self, match_id: str, dealer_id: str, flags: dict) -> Optional[VehicleMatch]:
        with self._lock:
            match = self._matches.get(match_id)
            if match is None or match.dealer_id != dealer_id:
                return None
            updated = replace(match, updated_at=utcnow(), **flags)
            self._matches[match_id] = updated
            return copy.deepcopy(updated)

    def get_matches(
        self,
        dealer_id: str,
        min_score: int = 0,
        saved_only: bool = False,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "final_score",
    ) -> list[VehicleMatch]:
        column, descending = MATCH_SORT_ORDERS[sort_by]
        with self._lock:
            rows = [
                copy.deepcopy(m) for m in self._matches.values()
                if m.dealer_id == dealer_id
                and (min_score <= 0 or m.final_score >= min_score)
                and (m.saved or not saved_only)
            ]
        if column == "price":
            rows.sort(key=lambda m: m.listing.price, reverse=descending)
        else:
            rows.sort(key=lambda m: getattr(m, column), reverse=descending)
        return rows[offset:offset + limit]

    def count_matches(self, dealer_id: str, min_score: int = 0) -> int:
        with self._lock:
            return sum(
                1 for m in self._matches.values()
                if m.dealer_id == dealer_id and (min_score <= 0 or m.final_score >= min_score)
            )

    def get_match_stats(self, dealer_id: str) -> MatchStats:
        with self._lock:
            scores = [
                (m.base_score, m.personalization_boost)
                for m in self._matches.values() if m.dealer_id == dealer_id
            ]
        return MatchStats.from_scores(scores)

    # Usage counters

    def consume_window_quota(self, subject: str, window_start: datetime, limit: int) -> tuple[bool, int]:
        key = (subject, window_start)
        with self._lock:
            count = self._counters.get(key, 0)
            if count >= limit:
                return False, count
            self._counters[key] = count + 1
            return True, count + 1

    def get_window_count(self, subject: str, window_start: datetime) -> int:
        with self._lock:
            return self._counters.get((subject, window_start), 0)

    def reset_window(self, subject: str, window_start: datetime) -> None:
        with self._lock:
            self._counters.pop((subject, window_start), None)
