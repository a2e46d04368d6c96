import pytest

from dealer_matching.errors import ValidationError
from dealer_matching.models import DealerPreferences
from dealer_matching.scoring import MatchScorer, score

from conftest import make_listing


def test_bmw_listing_scores_each_factor(bmw_preferences):
    base_score, breakdown = score(make_listing(), bmw_preferences)

    assert breakdown.make == 20
    assert breakdown.model == 15
    assert breakdown.year == 15
    assert breakdown.price == pytest.approx(11.0)
    assert breakdown.mileage == pytest.approx(5.0)
    assert breakdown.condition == 10
    assert breakdown.fuel_type == 5
    assert base_score == 81


def test_no_preferences_gives_full_marks():
    base_score, _ = score(make_listing(), DealerPreferences())
    assert base_score == 100


def test_unknown_mileage_gets_half_credit():
    _, breakdown = score(make_listing(mileage=None), DealerPreferences(max_mileage=50000))
    assert breakdown.mileage == 7.5


def test_make_match_is_case_insensitive_substring():
    prefs = DealerPreferences(preferred_makes={"bmw"})
    _, breakdown = score(make_listing(make="BMW M Sport"), prefs)
    assert breakdown.make == 20

    _, breakdown = score(make_listing(make="Audi"), prefs)
    assert breakdown.make == 0


def test_condition_and_fuel_need_exact_option():
    prefs = DealerPreferences(preferred_conditions={"Excellent"}, fuel_types={"Diesel"})
    _, breakdown = score(make_listing(condition="excellent", fuel_type="Petrol"), prefs)
    assert breakdown.condition == 10
    assert breakdown.fuel_type == 0

    _, breakdown = score(make_listing(condition=None), prefs)
    assert breakdown.condition == 0


def test_out_of_range_price_and_year_score_zero():
    prefs = DealerPreferences(min_year=2018, max_year=2022, min_price=5000, max_price=20000)
    _, breakdown = score(make_listing(year=2015, price=25000), prefs)
    assert breakdown.year == 0
    assert breakdown.price == 0


def test_cheaper_listing_never_scores_lower(bmw_preferences):
    scores = [score(make_listing(price=price), bmw_preferences)[0] for price in (19500, 15000, 9000, 1000)]
    assert scores == sorted(scores)


def test_lower_mileage_never_scores_lower(bmw_preferences):
    scores = [score(make_listing(mileage=m), bmw_preferences)[0] for m in (59000, 40000, 10000, 0)]
    assert scores == sorted(scores)


@pytest.mark.parametrize("listing", [
    make_listing(year=1950, price=10 ** 9, mileage=10 ** 7),
    make_listing(make="", model="", price=0, mileage=0),
    make_listing(price=-5),
])
def test_base_score_stays_in_bounds(listing, bmw_preferences):
    base_score, _ = score(listing, bmw_preferences)
    assert 0 <= base_score <= 100


def test_score_is_deterministic(bmw_preferences):
    assert score(make_listing(), bmw_preferences) == score(make_listing(), bmw_preferences)


def test_score_listings_sorted_best_first(bmw_preferences):
    listings = [make_listing("a", make="Audi"), make_listing("b"), make_listing("c", price=19900)]
    results = MatchScorer().score_listings(listings, bmw_preferences)
    assert [listing.listing_id for listing, _, _ in results] == ["b", "c", "a"]


def test_disqualified_outside_hard_bounds(bmw_preferences):
    scorer = MatchScorer()
    assert not scorer.is_disqualified(make_listing(), bmw_preferences)
    assert scorer.is_disqualified(make_listing(price=25000), bmw_preferences)
    assert scorer.is_disqualified(make_listing(year=2010), bmw_preferences)
    assert scorer.is_disqualified(make_listing(mileage=90000), bmw_preferences)


def test_inverted_price_range_rejected():
    with pytest.raises(ValidationError):
        DealerPreferences(min_price=30000, max_price=10000).validate()


def test_inverted_year_range_rejected():
    with pytest.raises(ValidationError):
        DealerPreferences.from_dict({"min_year": 2022, "max_year": 2018})


def test_negative_mileage_never_exceeds_factor_maximum():
    _, breakdown = score(make_listing(mileage=-60000), DealerPreferences(max_mileage=60000))
    assert breakdown.mileage == 15


def test_non_finite_price_scores_zero_price_points(bmw_preferences):
    base_score, breakdown = score(make_listing(price=float("nan")), bmw_preferences)
    assert breakdown.price == 0
    assert 0 <= base_score <= 100
