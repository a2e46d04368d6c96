"""
Match Scoring module for Dealer Matching.

Scores a vehicle listing against a dealer's explicit preferences.
Produces a deterministic 0-100 base score and the points behind it.
"""

import logging
import math
from typing import Optional

from .models import (
    DealerPreferences,
    FACTOR_MAX_POINTS,
    ScoreBreakdown,
    VehicleListing,
    canonical_key,
)

logger = logging.getLogger(__name__)


# =============================================================================
# MATCH SCORER
# =============================================================================

class MatchScorer:
    """
    Scores listings against dealer preferences.

    Each factor earns its maximum when satisfied, partial credit where a
    distance makes sense, and full credit when the dealer stated no
    preference for it.

    Usage:
        scorer = MatchScorer()
        base_score, breakdown = scorer.score(listing, preferences)
    """

    # Maximum points per factor
    WEIGHTS = FACTOR_MAX_POINTS

    # Awarded when mileage is not known
    UNKNOWN_MILEAGE_POINTS = 7.5

    def __init__(self, weights: Optional[dict] = None):
        """Initialize scorer with optional custom weights."""
        self.weights = weights or dict(self.WEIGHTS)

    @property
    def max_possible(self) -> float:
        return sum(self.weights.values())

    def score(
        self,
        listing: VehicleListing,
        preferences: DealerPreferences,
    ) -> tuple[int, ScoreBreakdown]:
        """
        Score a single listing.

        Returns:
            (base_score in 0-100, ScoreBreakdown of raw points)
        """
        breakdown = ScoreBreakdown(
            make=self._score_text_match(listing.make, preferences.preferred_makes, "make"),
            model=self._score_text_match(listing.model, preferences.preferred_models, "model"),
            year=self._score_year(listing, preferences),
            price=self._score_price(listing, preferences),
            mileage=self._score_mileage(listing, preferences),
            condition=self._score_set_match(listing.condition, preferences.preferred_conditions, "condition"),
            fuel_type=self._score_set_match(listing.fuel_type, preferences.fuel_types, "fuel_type"),
        )

        base_score = round(100 * breakdown.total / self.max_possible)
        base_score = max(0, min(100, base_score))

        logger.debug(f"Scored {listing.listing_id}: {base_score} {breakdown.to_dict()}")
        return base_score, breakdown

    def score_listings(
        self,
        listings: list[VehicleListing],
        preferences: DealerPreferences,
    ) -> list[tuple[VehicleListing, int, ScoreBreakdown]]:
        """Score many listings, highest base score first."""
        results = []
        for listing in listings:
            base_score, breakdown = self.score(listing, preferences)
            results.append((listing, base_score, breakdown))

        results.sort(key=lambda r: r[1], reverse=True)
        return results

    def is_disqualified(self, listing: VehicleListing, preferences: DealerPreferences) -> bool:
        """
        True when the listing falls outside a stated hard bound.

        Hard bounds are the year window, the price range and the mileage cap.
        """
        if listing.year < preferences.min_year:
            return True
        if preferences.max_year is not None and listing.year > preferences.max_year:
            return True
        if preferences.min_price is not None and listing.price < preferences.min_price:
            return True
        if preferences.max_price is not None and listing.price > preferences.max_price:
            return True
        if (preferences.max_mileage is not None and listing.mileage is not None
                and listing.mileage > preferences.max_mileage):
            return True
        return False

    def _score_text_match(self, value: str, preferred: set[str], factor: str) -> float:
        """Full points if no preference or any preferred term appears in the value."""
        if not preferred:
            return self.weights[factor]

        text = canonical_key(value)
        for term in preferred:
            term_key = canonical_key(term)
            if term_key and term_key in text:
                return self.weights[factor]
        return 0.0

    def _score_set_match(self, value: Optional[str], preferred: set[str], factor: str) -> float:
        """Full points if no preference or the value is one of the preferred options."""
        if not preferred:
            return self.weights[factor]
        if value is None:
            return 0.0
        if canonical_key(value) in {canonical_key(p) for p in preferred}:
            return self.weights[factor]
        return 0.0

    def _score_year(self, listing: VehicleListing, preferences: DealerPreferences) -> float:
        """
        Full points at min_year, scaling down linearly across [min_year, max_year].
        """
        weight = self.weights["year"]
        if listing.year < preferences.min_year:
            return 0.0

        if preferences.max_year is None:
            return weight

        span = preferences.max_year - preferences.min_year
        if span <= 0:
            return weight if listing.year == preferences.min_year else 0.0

        score = weight * (1 - abs(listing.year - preferences.min_year) / span)
        return max(0.0, score)

    def _score_price(self, listing: VehicleListing, preferences: DealerPreferences) -> float:
        """Cheaper is better within the stated range; nothing outside it."""
        weight = self.weights["price"]
        if not math.isfinite(listing.price) or listing.price < 0:
            return 0.0

        if preferences.min_price is None and preferences.max_price is None:
            return weight

        min_price = preferences.min_price or 0.0
        if listing.price < min_price:
            return 0.0

        if preferences.max_price is None:
            return weight
        if listing.price > preferences.max_price:
            return 0.0

        span = preferences.max_price - min_price
        if span <= 0:
            return weight

        position = (listing.price - min_price) / span
        half = weight / 2
        return half + half * (1 - position)

    def _score_mileage(self, listing: VehicleListing, preferences: DealerPreferences) -> float:
        """Scale down to zero as mileage approaches the cap; half credit if unknown."""
        weight = self.weights["mileage"]
        if listing.mileage is None:
            return self.UNKNOWN_MILEAGE_POINTS * weight / self.WEIGHTS["mileage"]

        if preferences.max_mileage is None:
            return weight
        if listing.mileage > preferences.max_mileage:
            return 0.0
        if preferences.max_mileage == 0:
            return weight

        score = weight * (1 - listing.mileage / preferences.max_mileage)
        return max(0.0, min(weight, score))


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def score(listing: VehicleListing, preferences: DealerPreferences) -> tuple[int, ScoreBreakdown]:
    """
    Convenience function to score one listing with default weights.

    Args:
        listing: The vehicle listing
        preferences: The dealer's explicit preferences

    Returns:
        (base_score, breakdown)
    """
    return MatchScorer().score(listing, preferences)
