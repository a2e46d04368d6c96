import pytest

from dealer_matching.errors import ValidationError
from dealer_matching.models import (
    DealerPreferences,
    InteractionType,
    LearnedPreferences,
    PlanTier,
    ScoreBreakdown,
    VehicleListing,
    VehicleMatch,
    canonical_key,
    get_daily_limit,
)

from conftest import make_listing


def test_canonical_key():
    assert canonical_key("  Land   Rover ") == "land rover"
    assert canonical_key(None) == ""


def test_interaction_type_parse():
    assert InteractionType.parse("CONTACT_SELLER") is InteractionType.CONTACT_SELLER
    with pytest.raises(ValidationError):
        InteractionType.parse("save")


@pytest.mark.parametrize("plan, limit", [("trial", 3), ("Starter", 5), (PlanTier.PREMIUM, 10), ("pro", 25)])
def test_daily_limits(plan, limit):
    assert get_daily_limit(plan) == limit


def test_unknown_plan():
    with pytest.raises(ValidationError):
        get_daily_limit("enterprise")


def test_listing_from_dict_requires_core_fields():
    with pytest.raises(ValidationError):
        VehicleListing.from_dict({"listing_id": "l1", "make": "BMW", "model": "X5", "year": 2020})

    listing = VehicleListing.from_dict({"listing_id": 7, "make": " BMW ", "model": "X5", "year": "2020", "price": "15000"})
    assert listing.listing_id == "7"
    assert listing.make == "BMW"
    assert listing.year == 2020
    assert listing.mileage is None


def test_learned_preferences_round_trip_canonicalises_keys():
    learned = LearnedPreferences.from_dict({
        "dealer_id": "dealer-1",
        "learned_makes": {"BMW": 0.8},
        "total_saves": 3,
        "total_skips": 1,
        "version": 4,
    })
    assert learned.make_weight("bmw") == 0.8
    assert learned.baseline_save_rate == pytest.approx(4 / 6)
    assert LearnedPreferences.from_dict(learned.to_dict()) == learned


def test_new_profile_baseline_is_neutral():
    assert LearnedPreferences(dealer_id="dealer-1").baseline_save_rate == 0.5


def test_match_row_snapshots_listing():
    match = VehicleMatch(
        match_id="m1",
        dealer_id="dealer-1",
        listing=make_listing(),
        base_score=81,
        personalization_boost=-90,
        score_breakdown=ScoreBreakdown(make=20),
    )
    row = match.to_dict()

    assert row["make"] == "BMW"
    assert row["final_score"] == -9
    assert match.display_score() == 0
    assert VehicleMatch.from_dict(row).listing == match.listing


def test_preferences_reject_bare_string_for_list_field():
    with pytest.raises(ValidationError):
        DealerPreferences.from_dict({"preferred_makes": "BMW"})
    with pytest.raises(ValidationError):
        DealerPreferences.from_dict({"fuel_types": ["Diesel", 3]})


@pytest.mark.parametrize("field, value", [
    ("min_price", "cheap"),
    ("max_price", float("nan")),
    ("max_mileage", -1),
    ("min_year", True),
    ("max_year", 2020.5),
])
def test_preferences_reject_bad_numbers(field, value):
    with pytest.raises(ValidationError):
        DealerPreferences.from_dict({field: value})


def test_preferences_from_dict_keeps_valid_filters():
    prefs = DealerPreferences.from_dict({
        "preferred_makes": ["BMW", "Audi"],
        "min_year": 2018,
        "max_price": "20000",
        "max_mileage": 60000,
    })
    assert prefs.preferred_makes == {"BMW", "Audi"}
    assert prefs.max_price == 20000.0
    assert prefs.min_year == 2018
    assert DealerPreferences.from_dict({}).min_year == 1990


@pytest.mark.parametrize("field, value", [
    ("price", float("nan")),
    ("price", float("inf")),
    ("price", -100),
    ("mileage", -60000),
    ("year", "twenty"),
])
def test_listing_from_dict_rejects_bad_numbers(field, value):
    row = make_listing().to_dict()
    row[field] = value
    with pytest.raises(ValidationError):
        VehicleListing.from_dict(row)
