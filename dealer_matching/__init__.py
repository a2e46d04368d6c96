"""
Dealer Matching - Personalized Vehicle Matching & Preference Learning

Scores auction listings against a dealer's explicit filters, personalises
the score from the dealer's own saves and skips, gates views behind the
plan's daily quota and explains every score in plain language.

Modules:
- config: Configuration and environment variables
- errors: Exceptions raised at the boundary
- models: Canonical data models (dataclasses)
- db: Supabase integration for storage
- memory: In-process storage backend
- scoring: Deterministic base score from explicit preferences
- learning: Learned preferences, personalization boost, learning progress
- quota: Daily view quota and windowed rate limiting
- explanation: Human-readable score breakdowns
- pipeline: Orchestration and CLI
- api: Flask HTTP API
- scheduler: APScheduler maintenance jobs
"""

__version__ = "0.1.0"

# Convenient imports
from .errors import (
    ValidationError,
    OwnershipError,
    MatchNotFoundError,
    LearnerUpdateError,
)
from .models import (
    VehicleListing,
    DealerPreferences,
    LearnedPreferences,
    Interaction,
    InteractionType,
    PlanTier,
    ScoreBreakdown,
    MatchStats,
    VehicleMatch,
)
from .scoring import MatchScorer, score
from .learning import (
    PreferenceLearner,
    LearningProgress,
    compute_boost,
    learning_progress,
    rebuild_learned_preferences,
)
from .quota import QuotaGuard, QuotaDecision, RateLimiter, UsageStats
from .explanation import explain
from .memory import InMemoryDatabase
from .pipeline import DealerMetrics, MatchingService

__all__ = [
    # Errors
    "ValidationError",
    "OwnershipError",
    "MatchNotFoundError",
    "LearnerUpdateError",
    # Models
    "VehicleListing",
    "DealerPreferences",
    "LearnedPreferences",
    "Interaction",
    "InteractionType",
    "PlanTier",
    "ScoreBreakdown",
    "MatchStats",
    "VehicleMatch",
    # Scoring
    "MatchScorer",
    "score",
    # Learning
    "PreferenceLearner",
    "LearningProgress",
    "compute_boost",
    "learning_progress",
    "rebuild_learned_preferences",
    # Quota
    "QuotaGuard",
    "QuotaDecision",
    "RateLimiter",
    "UsageStats",
    # Explanation
    "explain",
    # Pipeline
    "InMemoryDatabase",
    "MatchingService",
    "DealerMetrics",
]
