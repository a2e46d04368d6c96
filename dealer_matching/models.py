"""
Data models for Dealer Matching.

Defines the canonical dataclasses the engine works with: scraped listings,
explicit and learned dealer preferences, the interaction log and the scored
vehicle matches persisted for downstream consumers.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum

from .errors import ValidationError


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def canonical_key(text: Optional[str]) -> str:
    """
    Canonical form of a free-text make/model.

    Trims, collapses inner whitespace and case-folds so that "BMW", " bmw "
    and "Bmw" share one learned weight.
    """
    if not text:
        return ""
    return " ".join(text.split()).casefold()


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _string_set(data: dict, key: str) -> set[str]:
    """A list of strings from a request body, as a set. A bare string is rejected."""
    value = data.get(key)
    if value is None:
        return set()
    if not isinstance(value, (list, tuple, set, frozenset)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{key} must be a list of strings")
    return set(value)


def _number(
    data: dict,
    key: str,
    integer: bool = False,
    required: bool = False,
) -> Optional[float]:
    """
    A finite, non-negative number from a request body.

    Numeric strings are accepted (scraped rows carry them); booleans, NaN,
    infinities and negatives are not.
    """
    value = data.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(number) or number < 0:
        raise ValidationError(f"{key} must be a finite, non-negative number, got {value!r}")
    if integer:
        if not number.is_integer():
            raise ValidationError(f"{key} must be a whole number, got {value!r}")
        return int(number)
    return number


class InteractionType(str, Enum):
    """Dealer behaviour recorded against a vehicle match."""
    VIEW = "VIEW"
    SAVE = "SAVE"
    SKIP = "SKIP"
    CONTACT_SELLER = "CONTACT_SELLER"
    SHARE = "SHARE"

    @classmethod
    def parse(cls, value) -> "InteractionType":
        """Parse a raw value, rejecting anything outside the enumeration."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValidationError(f"Invalid interactionType {value!r}. Must be one of: {valid}") from None


class PlanTier(str, Enum):
    """Subscription tiers."""
    TRIAL = "trial"
    STARTER = "starter"
    PREMIUM = "premium"
    PRO = "pro"

    @classmethod
    def parse(cls, value) -> "PlanTier":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown plan {value!r}") from None


# Cars a dealer may open per calendar day
PLAN_DAILY_LIMITS: dict[PlanTier, int] = {
    PlanTier.TRIAL: 3,
    PlanTier.STARTER: 5,
    PlanTier.PREMIUM: 10,
    PlanTier.PRO: 25,
}


def get_daily_limit(plan) -> int:
    """Daily car limit for a plan name or tier."""
    return PLAN_DAILY_LIMITS[PlanTier.parse(plan)]


@dataclass(frozen=True)
class VehicleListing:
    """
    Canonical representation of a scraped vehicle listing.

    Produced by the (external) normalizer and classifier. Immutable once
    scraped; identity is the source listing id.
    """
    listing_id: str
    make: str
    model: str
    year: int
    price: float
    mileage: Optional[int] = None
    condition: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    source_site: Optional[str] = None
    source_url: str = ""

    # Classifier output
    verdict: Optional[str] = None  # "HEALTHY" or "AVOID"
    risk_score: Optional[float] = None
    profit_estimate: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "listing_id": self.listing_id,
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "price": self.price,
            "mileage": self.mileage,
            "condition": self.condition,
            "fuel_type": self.fuel_type,
            "transmission": self.transmission,
            "source_site": self.source_site,
            "source_url": self.source_url,
            "verdict": self.verdict,
            "risk_score": self.risk_score,
            "profit_estimate": self.profit_estimate,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VehicleListing":
        """Create from dictionary (e.g., from database or request body)."""
        missing = [key for key in ("listing_id", "make", "model", "year", "price") if data.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required listing fields: {', '.join(missing)}")
        return cls(
            listing_id=str(data["listing_id"]),
            make=str(data["make"]).strip(),
            model=str(data["model"]).strip(),
            year=_number(data, "year", integer=True, required=True),
            price=_number(data, "price", required=True),
            mileage=_number(data, "mileage", integer=True),
            condition=data.get("condition"),
            fuel_type=data.get("fuel_type"),
            transmission=data.get("transmission"),
            source_site=data.get("source_site"),
            source_url=data.get("source_url", ""),
            verdict=data.get("verdict"),
            risk_score=data.get("risk_score"),
            profit_estimate=data.get("profit_estimate"),
        )


@dataclass
class DealerPreferences:
    """
    Explicit filters a dealer sets in their settings.

    An unset filter (empty set / None) gives full credit for that factor.
    """
    dealer_id: str = ""

    preferred_makes: set[str] = field(default_factory=set)
    preferred_models: set[str] = field(default_factory=set)

    min_year: int = 1990
    max_year: Optional[int] = None

    min_price: Optional[float] = None
    max_price: Optional[float] = None
    max_mileage: Optional[int] = None

    preferred_conditions: set[str] = field(default_factory=set)
    fuel_types: set[str] = field(default_factory=set)
    transmission_types: set[str] = field(default_factory=set)
    enabled_sites: set[str] = field(default_factory=set)

    def validate(self) -> "DealerPreferences":
        """Reject inconsistent filters. Returns self so calls can be chained."""
        if self.min_price is not None and self.min_price < 0:
            raise ValidationError("min_price must not be negative")
        if self.max_price is not None and self.max_price < 0:
            raise ValidationError("max_price must not be negative")
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValidationError(f"min_price {self.min_price} is greater than max_price {self.max_price}")
        if self.max_year is not None and self.min_year > self.max_year:
            raise ValidationError(f"min_year {self.min_year} is greater than max_year {self.max_year}")
        if self.max_mileage is not None and self.max_mileage < 0:
            raise ValidationError("max_mileage must not be negative")
        return self

    def to_dict(self) -> dict:
        return {
            "dealer_id": self.dealer_id,
            "preferred_makes": sorted(self.preferred_makes),
            "preferred_models": sorted(self.preferred_models),
            "min_year": self.min_year,
            "max_year": self.max_year,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "max_mileage": self.max_mileage,
            "preferred_conditions": sorted(self.preferred_conditions),
            "fuel_types": sorted(self.fuel_types),
            "transmission_types": sorted(self.transmission_types),
            "enabled_sites": sorted(self.enabled_sites),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DealerPreferences":
        """
        Create from dictionary and validate.

        Raises:
            ValidationError: a filter has the wrong shape (e.g. a bare string
                where a list is expected) or the ranges are inconsistent
        """
        min_year = _number(data, "min_year", integer=True)
        prefs = cls(
            dealer_id=data.get("dealer_id") or "",
            preferred_makes=_string_set(data, "preferred_makes"),
            preferred_models=_string_set(data, "preferred_models"),
            min_year=min_year if min_year is not None else 1990,
            max_year=_number(data, "max_year", integer=True),
            min_price=_number(data, "min_price"),
            max_price=_number(data, "max_price"),
            max_mileage=_number(data, "max_mileage", integer=True),
            preferred_conditions=_string_set(data, "preferred_conditions"),
            fuel_types=_string_set(data, "fuel_types"),
            transmission_types=_string_set(data, "transmission_types"),
            enabled_sites=_string_set(data, "enabled_sites"),
        )
        return prefs.validate()


@dataclass
class ValueRange:
    """Observed min/max and smoothed preferred value (price or mileage)."""
    min: Optional[float] = None
    max: Optional[float] = None
    preferred: Optional[float] = None

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "preferred": self.preferred}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ValueRange":
        data = data or {}
        return cls(min=data.get("min"), max=data.get("max"), preferred=data.get("preferred"))


@dataclass
class LearnedPreferences:
    """
    Per-dealer statistical profile accumulated from interactions.

    Weights are exponentially smoothed save frequencies in [0, 1], keyed by
    canonical make/model. `version` increments on every stored update.
    """
    dealer_id: str
    learned_makes: dict[str, float] = field(default_factory=dict)
    learned_models: dict[str, float] = field(default_factory=dict)
    learned_price_range: ValueRange = field(default_factory=ValueRange)
    learned_mileage_range: ValueRange = field(default_factory=ValueRange)
    total_interactions: int = 0
    total_saves: int = 0
    total_skips: int = 0
    last_updated: Optional[datetime] = None
    version: int = 0

    @property
    def baseline_save_rate(self) -> float:
        """Dealer's own save rate, Laplace-smoothed so a new profile sits at 0.5."""
        return (self.total_saves + 1) / (self.total_saves + self.total_skips + 2)

    def make_weight(self, make: str) -> Optional[float]:
        return self.learned_makes.get(canonical_key(make))

    def model_weight(self, model: str) -> Optional[float]:
        return self.learned_models.get(canonical_key(model))

    def to_dict(self) -> dict:
        return {
            "dealer_id": self.dealer_id,
            "learned_makes": dict(self.learned_makes),
            "learned_models": dict(self.learned_models),
            "learned_price_range": self.learned_price_range.to_dict(),
            "learned_mileage_range": self.learned_mileage_range.to_dict(),
            "total_interactions": self.total_interactions,
            "total_saves": self.total_saves,
            "total_skips": self.total_skips,
            "last_updated": _isoformat(self.last_updated),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LearnedPreferences":
        return cls(
            dealer_id=data["dealer_id"],
            learned_makes={canonical_key(k): float(v) for k, v in (data.get("learned_makes") or {}).items()},
            learned_models={canonical_key(k): float(v) for k, v in (data.get("learned_models") or {}).items()},
            learned_price_range=ValueRange.from_dict(data.get("learned_price_range")),
            learned_mileage_range=ValueRange.from_dict(data.get("learned_mileage_range")),
            total_interactions=data.get("total_interactions", 0),
            total_saves=data.get("total_saves", 0),
            total_skips=data.get("total_skips", 0),
            last_updated=_parse_datetime(data.get("last_updated")),
            version=data.get("version", 0),
        )


@dataclass(frozen=True)
class Interaction:
    """
    Immutable, timestamped behavioural event.

    Append-only: never mutated or deleted; the sole input to learning.
    """
    interaction_id: str
    dealer_id: str
    interaction_type: InteractionType
    vehicle_match_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    metadata: Optional[dict] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "interaction_id": self.interaction_id,
            "dealer_id": self.dealer_id,
            "interaction_type": self.interaction_type.value,
            "vehicle_match_id": self.vehicle_match_id,
            "duration_seconds": self.duration_seconds,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Interaction":
        return cls(
            interaction_id=data["interaction_id"],
            dealer_id=data["dealer_id"],
            interaction_type=InteractionType.parse(data["interaction_type"]),
            vehicle_match_id=data.get("vehicle_match_id"),
            duration_seconds=data.get("duration_seconds"),
            metadata=data.get("metadata"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


# Maximum points per scoring factor
FACTOR_MAX_POINTS: dict[str, float] = {
    "make": 20.0,
    "model": 15.0,
    "year": 15.0,
    "price": 20.0,
    "mileage": 15.0,
    "condition": 10.0,
    "fuel_type": 5.0,
}

FACTOR_LABELS: dict[str, str] = {
    "make": "Make",
    "model": "Model",
    "year": "Year",
    "price": "Price",
    "mileage": "Mileage",
    "condition": "Condition",
    "fuel_type": "Fuel type",
}


@dataclass(frozen=True)
class ScoreBreakdown:
    """Points awarded per scoring factor."""
    make: float = 0.0
    model: float = 0.0
    year: float = 0.0
    price: float = 0.0
    mileage: float = 0.0
    condition: float = 0.0
    fuel_type: float = 0.0

    @property
    def total(self) -> float:
        return sum(points for _, points in self.items())

    def items(self) -> list[tuple[str, float]]:
        """(factor, points) pairs in display order."""
        return [(name, getattr(self, name)) for name in FACTOR_MAX_POINTS]

    def to_dict(self) -> dict:
        return {name: round(points, 2) for name, points in self.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ScoreBreakdown":
        data = data or {}
        return cls(**{name: float(data.get(name, 0.0)) for name in FACTOR_MAX_POINTS})


@dataclass
class VehicleMatch:
    """
    Scored association between one dealer and one listing.

    final_score is base + boost and is deliberately unclamped; use
    display_score() for anything shown to a dealer.
    """
    match_id: str
    dealer_id: str
    listing: VehicleListing
    base_score: int
    personalization_boost: int = 0
    score_breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)

    # Interaction flags
    viewed: bool = False
    saved: bool = False
    skipped: bool = False
    contacted_seller: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def final_score(self) -> int:
        return self.base_score + self.personalization_boost

    def display_score(self) -> int:
        return max(0, min(100, self.final_score))

    def to_dict(self) -> dict:
        """Flattened row for storage; listing attributes are snapshotted."""
        data = {
            "match_id": self.match_id,
            "dealer_id": self.dealer_id,
            "base_score": self.base_score,
            "personalization_boost": self.personalization_boost,
            "final_score": self.final_score,
            "score_breakdown": self.score_breakdown.to_dict(),
            "viewed": self.viewed,
            "saved": self.saved,
            "skipped": self.skipped,
            "contacted_seller": self.contacted_seller,
            "created_at": self.created_at.isoformat(),
            "updated_at": _isoformat(self.updated_at),
        }
        data.update(self.listing.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VehicleMatch":
        return cls(
            match_id=data["match_id"],
            dealer_id=data["dealer_id"],
            listing=VehicleListing.from_dict(data),
            base_score=int(data["base_score"]),
            personalization_boost=int(data.get("personalization_boost") or 0),
            score_breakdown=ScoreBreakdown.from_dict(data.get("score_breakdown")),
            viewed=bool(data.get("viewed", False)),
            saved=bool(data.get("saved", False)),
            skipped=bool(data.get("skipped", False)),
            contacted_seller=bool(data.get("contacted_seller", False)),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


# Interaction type -> VehicleMatch flag it sets
INTERACTION_FLAGS: dict[InteractionType, str] = {
    InteractionType.VIEW: "viewed",
    InteractionType.SAVE: "saved",
    InteractionType.SKIP: "skipped",
    InteractionType.CONTACT_SELLER: "contacted_seller",
}


# Sort keys accepted when listing matches -> (field, descending)
MATCH_SORT_ORDERS: dict[str, tuple[str, bool]] = {
    "final_score": ("final_score", True),
    "created_at": ("created_at", True),
    "price": ("price", False),
}


@dataclass
class MatchStats:
    """Score averages over all of a dealer's matches."""
    total_matches: int = 0
    avg_base_score: float = 0.0
    avg_personalization_boost: float = 0.0
    avg_final_score: float = 0.0

    @classmethod
    def from_scores(cls, scores: list[tuple[int, int]]) -> "MatchStats":
        """Build from (base_score, personalization_boost) pairs."""
        if not scores:
            return cls()
        count = len(scores)
        base_total = sum(base for base, _ in scores)
        boost_total = sum(boost for _, boost in scores)
        return cls(
            total_matches=count,
            avg_base_score=round(base_total / count, 1),
            avg_personalization_boost=round(boost_total / count, 1),
            avg_final_score=round((base_total + boost_total) / count, 1),
        )

    def to_dict(self) -> dict:
        return {
            "total_matches": self.total_matches,
            "avg_base_score": self.avg_base_score,
            "avg_personalization_boost": self.avg_personalization_boost,
            "avg_final_score": self.avg_final_score,
        }
