"""
Preference Learning module for Dealer Matching.

Handles:
1. Turning SAVE/SKIP interactions into per-dealer learned weights
2. Computing the personalization boost applied on top of the base score
3. Replaying the interaction log to repair a profile (rebuild)
4. The learning-stage readout shown to dealers

Weights are exponentially smoothed save frequencies:
- SAVE moves a make/model weight toward 1
- SKIP moves it toward 0
- VIEW, CONTACT_SELLER and SHARE only count as interactions
"""

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import AppConfig, get_app_config
from .db import get_db
from .errors import LearnerUpdateError, OwnershipError
from .models import (
    Interaction,
    InteractionType,
    LearnedPreferences,
    ValueRange,
    VehicleListing,
    canonical_key,
    utcnow,
)

logger = logging.getLogger(__name__)

# Weight given to a make/model the first time it is seen
NEUTRAL_WEIGHT = 0.5


# =============================================================================
# BOOST COMPUTATION
# =============================================================================

@dataclass
class BoostComponent:
    """One learned signal's contribution to the personalization boost."""
    signal: str  # "make", "model" or "price"
    subject: str  # make/model text, or the preferred price
    strength: float  # learned weight (make/model) or closeness (price), 0-1
    points: float


def personalization_components(
    learned: Optional[LearnedPreferences],
    listing: VehicleListing,
    config: Optional[AppConfig] = None,
) -> list[BoostComponent]:
    """
    Break the boost for a listing down into its learned signals.

    Make and model contribute relative to the dealer's own average save
    rate, so they can be negative. Price proximity only ever adds.
    """
    if learned is None:
        return []

    config = config or get_app_config()
    baseline = learned.baseline_save_rate
    components = []

    make_weight = learned.make_weight(listing.make)
    if make_weight is not None:
        components.append(BoostComponent(
            signal="make",
            subject=listing.make,
            strength=make_weight,
            points=(make_weight - baseline) * config.make_boost_points,
        ))

    model_weight = learned.model_weight(listing.model)
    if model_weight is not None:
        components.append(BoostComponent(
            signal="model",
            subject=listing.model,
            strength=model_weight,
            points=(model_weight - baseline) * config.model_boost_points,
        ))

    preferred = learned.learned_price_range.preferred
    if preferred is not None and preferred > 0:
        tolerance = max(preferred * config.price_tolerance_ratio, config.min_price_tolerance)
        closeness = max(0.0, 1 - abs(listing.price - preferred) / tolerance)
        if closeness > 0:
            components.append(BoostComponent(
                signal="price",
                subject=f"{preferred:.0f}",
                strength=closeness,
                points=closeness * config.price_boost_points,
            ))

    return components


def compute_boost(
    learned: Optional[LearnedPreferences],
    listing: VehicleListing,
    disqualified: bool = False,
    config: Optional[AppConfig] = None,
) -> int:
    """
    Signed personalization boost, bounded to +/- boost_cap.

    A disqualified listing (outside the dealer's hard bounds) can be
    penalised but never lifted.
    """
    config = config or get_app_config()
    components = personalization_components(learned, listing, config)
    if not components:
        return 0

    boost = round(sum(c.points for c in components))
    boost = max(-config.boost_cap, min(config.boost_cap, boost))

    if disqualified:
        boost = min(boost, 0)
    return boost


# =============================================================================
# LEARNING UPDATE
# =============================================================================

def _smooth(old: float, target: float, alpha: float) -> float:
    return old * (1 - alpha) + target * alpha


def _update_weight(weights: dict[str, float], key: str, target: float, alpha: float) -> None:
    if not key:
        return
    old = weights.get(key, NEUTRAL_WEIGHT)
    weights[key] = max(0.0, min(1.0, _smooth(old, target, alpha)))


def _update_range(value_range: ValueRange, value: float, alpha: float) -> ValueRange:
    return ValueRange(
        min=value if value_range.min is None else min(value_range.min, value),
        max=value if value_range.max is None else max(value_range.max, value),
        preferred=value if value_range.preferred is None else _smooth(value_range.preferred, value, alpha),
    )


def apply_interaction(
    learned: LearnedPreferences,
    interaction_type: InteractionType,
    listing: Optional[VehicleListing] = None,
    alpha: float = 0.3,
    at: Optional[datetime] = None,
) -> LearnedPreferences:
    """
    Return a new profile with one interaction folded in.

    The input profile is left untouched.
    """
    updated = copy.deepcopy(learned)
    updated.total_interactions += 1
    updated.last_updated = at or utcnow()

    if interaction_type == InteractionType.SAVE:
        updated.total_saves += 1
        if listing is not None:
            _update_weight(updated.learned_makes, canonical_key(listing.make), 1.0, alpha)
            _update_weight(updated.learned_models, canonical_key(listing.model), 1.0, alpha)
            updated.learned_price_range = _update_range(updated.learned_price_range, listing.price, alpha)
            if listing.mileage is not None:
                updated.learned_mileage_range = _update_range(
                    updated.learned_mileage_range, listing.mileage, alpha
                )

    elif interaction_type == InteractionType.SKIP:
        updated.total_skips += 1
        if listing is not None:
            _update_weight(updated.learned_makes, canonical_key(listing.make), 0.0, alpha)
            _update_weight(updated.learned_models, canonical_key(listing.model), 0.0, alpha)

    return updated


# =============================================================================
# LEARNING PROGRESS
# =============================================================================

@dataclass
class LearningProgress:
    """Learning-stage readout for the dashboard."""
    stage: str
    percentage: float
    next_milestone: str
    total_interactions: int = 0

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "percentage": self.percentage,
            "next_milestone": self.next_milestone,
            "total_interactions": self.total_interactions,
        }


def learning_progress(learned: Optional[LearnedPreferences]) -> LearningProgress:
    """Stage, progress percentage and next milestone for a profile."""
    if learned is None:
        return LearningProgress(
            stage="Getting Started",
            percentage=0.0,
            next_milestone="Save or skip 5 vehicles to start learning your preferences",
        )

    total = learned.total_interactions

    if total < 5:
        stage = "Getting Started"
        percentage = (total / 5) * 50
        milestone = f"{5 - total} more interactions to start learning"
    elif total < 20:
        stage = "Learning"
        percentage = 50 + ((total - 5) / 15) * 30
        milestone = f"{20 - total} more interactions for better recommendations"
    elif total < 50:
        stage = "Improving"
        percentage = 80 + ((total - 20) / 30) * 15
        milestone = f"{50 - total} more interactions for optimal personalization"
    else:
        stage = "Optimized"
        percentage = 95 + min((total - 50) / 100 * 5, 5)
        milestone = "Your preferences are well-learned!"

    return LearningProgress(
        stage=stage,
        percentage=round(percentage, 1),
        next_milestone=milestone,
        total_interactions=total,
    )


# =============================================================================
# PREFERENCE LEARNER
# =============================================================================

class PreferenceLearner:
    """
    Maintains learned preferences per dealer.

    Updates for one dealer are serialised by an in-process lock and
    committed with a compare-and-swap on the profile version, so two
    processes racing on the same dealer retry instead of losing an update.

    Usage:
        learner = PreferenceLearner()
        learner.observe(dealer_id, interaction)
        boost = learner.boost(dealer_id, listing)
    """

    def __init__(self, db=None, config: Optional[AppConfig] = None):
        self.db = db or get_db()
        self.config = config or get_app_config()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, dealer_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(dealer_id)
            if lock is None:
                lock = self._locks[dealer_id] = threading.Lock()
            return lock

    def get_learned(self, dealer_id: str) -> Optional[LearnedPreferences]:
        """Get the stored profile, or None for a dealer with no history."""
        return self.db.get_learned_preferences(dealer_id)

    def boost(self, dealer_id: str, listing: VehicleListing, disqualified: bool = False) -> int:
        """
        Personalization boost for a listing.

        Exactly 0 for a dealer without a profile. A storage failure also
        yields 0 so scoring never fails in front of the dealer.
        """
        try:
            learned = self.get_learned(dealer_id)
        except Exception as e:
            logger.warning(f"Could not load learned preferences for {dealer_id}: {e}")
            return 0
        return compute_boost(learned, listing, disqualified=disqualified, config=self.config)

    def observe(self, dealer_id: str, interaction: Interaction) -> LearnedPreferences:
        """
        Fold a freshly recorded interaction into the dealer's profile.

        Raises:
            OwnershipError: the interaction or its match belongs to another dealer
            LearnerUpdateError: the profile could not be committed
        """
        if interaction.dealer_id != dealer_id:
            raise OwnershipError(f"Interaction {interaction.interaction_id} does not belong to dealer {dealer_id}")

        listing = self._listing_for(dealer_id, interaction)

        with self._lock_for(dealer_id):
            for attempt in range(1, self.config.learner_max_retries + 1):
                current = self.db.get_learned_preferences(dealer_id)
                expected_version = current.version if current else None

                updated = apply_interaction(
                    current or LearnedPreferences(dealer_id=dealer_id),
                    interaction.interaction_type,
                    listing,
                    alpha=self.config.learning_rate,
                    at=interaction.created_at,
                )
                updated.version = (expected_version or 0) + 1

                if self.db.save_learned_preferences(updated, expected_version=expected_version):
                    logger.debug(
                        f"Learned {interaction.interaction_type.value} for {dealer_id} "
                        f"(v{updated.version}, {updated.total_interactions} interactions)"
                    )
                    return updated

                logger.info(f"Learned preferences for {dealer_id} changed concurrently, retry {attempt}")

        raise LearnerUpdateError(
            f"Gave up updating learned preferences for {dealer_id} "
            f"after {self.config.learner_max_retries} attempts"
        )

    def rebuild(self, dealer_id: str) -> LearnedPreferences:
        """
        Recompute a dealer's profile by replaying the whole interaction log.

        Used to catch up after an update failed; the result does not depend
        on which live updates succeeded. The stored version is read before
        the log, so an interaction observed mid-replay fails the commit and
        the log is replayed again.
        """
        with self._lock_for(dealer_id):
            for attempt in range(1, self.config.learner_max_retries + 1):
                current = self.db.get_learned_preferences(dealer_id)
                expected_version = current.version if current else None

                rebuilt, replayed = self._replay(dealer_id)
                rebuilt.version = (expected_version or 0) + 1

                if self.db.save_learned_preferences(rebuilt, expected_version=expected_version):
                    logger.info(f"Rebuilt learned preferences for {dealer_id} from {replayed} interactions")
                    return rebuilt
                logger.info(f"Rebuild of {dealer_id} raced a live update, retry {attempt}")

        raise LearnerUpdateError(f"Gave up rebuilding learned preferences for {dealer_id}")

    def _replay(self, dealer_id: str) -> tuple[LearnedPreferences, int]:
        """Fold the dealer's whole interaction log, oldest first, into a fresh profile."""
        interactions = self.db.get_interactions(dealer_id, ascending=True)
        listings: dict[str, Optional[VehicleListing]] = {}

        rebuilt = LearnedPreferences(dealer_id=dealer_id)
        for interaction in interactions:
            match_id = interaction.vehicle_match_id
            if match_id and match_id not in listings:
                listings[match_id] = self._listing_for(dealer_id, interaction)
            rebuilt = apply_interaction(
                rebuilt,
                interaction.interaction_type,
                listings.get(match_id) if match_id else None,
                alpha=self.config.learning_rate,
                at=interaction.created_at,
            )
        return rebuilt, len(interactions)

    def progress(self, dealer_id: str) -> LearningProgress:
        """Learning-stage readout for a dealer."""
        return learning_progress(self.get_learned(dealer_id))

    def _listing_for(self, dealer_id: str, interaction: Interaction) -> Optional[VehicleListing]:
        """Listing snapshot behind an interaction, if it references a match."""
        if not interaction.vehicle_match_id:
            return None

        match = self.db.get_match(interaction.vehicle_match_id)
        if match is None:
            logger.warning(
                f"Interaction {interaction.interaction_id} references unknown match "
                f"{interaction.vehicle_match_id}"
            )
            return None
        if match.dealer_id != dealer_id:
            raise OwnershipError(f"Match {match.match_id} does not belong to dealer {dealer_id}")
        return match.listing


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def rebuild_learned_preferences(dealer_id: str) -> LearnedPreferences:
    """Replay a dealer's interaction log into a fresh profile."""
    learner = PreferenceLearner()
    return learner.rebuild(dealer_id)
