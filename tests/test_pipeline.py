import threading
from datetime import timedelta

import pytest

from dealer_matching.errors import MatchNotFoundError, OwnershipError, ValidationError
from dealer_matching.models import InteractionType, utcnow

from conftest import make_listing


@pytest.fixture
def dealer(db, bmw_preferences):
    db.upsert_dealer_preferences(bmw_preferences)
    return bmw_preferences.dealer_id


def test_new_dealer_final_score_equals_base(service, dealer):
    match = service.score_listing(dealer, make_listing())

    assert match.base_score == 81
    assert match.personalization_boost == 0
    assert match.final_score == 81


def test_listing_is_scored_once_per_dealer(service, dealer):
    first = service.score_listing(dealer, make_listing())
    again = service.score_listing(dealer, make_listing(price=5000))

    assert again.match_id == first.match_id
    assert again.base_score == first.base_score
    assert len(service.get_matches(dealer)) == 1


def test_saves_lift_later_matches(service, dealer):
    for n in range(10):
        match = service.score_listing(dealer, make_listing(listing_id=f"seed-{n}", price=18000 + n * 50))
        service.record_interaction(dealer, "SAVE", vehicle_match_id=match.match_id)

    fresh = service.score_listing(dealer, make_listing(listing_id="fresh", price=18100))

    assert fresh.personalization_boost > 0
    assert fresh.final_score == fresh.base_score + fresh.personalization_boost


def test_match_listings_filters_and_sorts(service, db, bmw_preferences):
    bmw_preferences.enabled_sites = {"copart"}
    db.upsert_dealer_preferences(bmw_preferences)
    listings = [
        make_listing("a", make="Audi", source_site="copart"),
        make_listing("b", source_site="copart"),
        make_listing("c", source_site="iaai"),
        make_listing("d", source_site="copart", verdict="AVOID"),
    ]

    matches = service.match_listings("dealer-1", listings)

    assert [m.listing.listing_id for m in matches] == ["b", "a"]


def test_record_interaction_rejects_unknown_type(service, dealer):
    with pytest.raises(ValidationError):
        service.record_interaction(dealer, "LIKE")
    assert service.get_interactions(dealer) == []


def test_record_interaction_rejects_negative_duration(service, dealer):
    with pytest.raises(ValidationError):
        service.record_interaction(dealer, "VIEW", duration_seconds=-1)


def test_record_interaction_checks_match_ownership(service, dealer):
    match = service.score_listing("dealer-2", make_listing())

    with pytest.raises(OwnershipError):
        service.record_interaction(dealer, "SAVE", vehicle_match_id=match.match_id)
    with pytest.raises(MatchNotFoundError):
        service.record_interaction(dealer, "SAVE", vehicle_match_id="missing")


def test_record_interaction_sets_match_flags(service, dealer, db):
    match = service.score_listing(dealer, make_listing())

    service.record_interaction(dealer, "SAVE", vehicle_match_id=match.match_id)
    service.record_interaction(dealer, InteractionType.CONTACT_SELLER, vehicle_match_id=match.match_id)
    service.record_interaction(dealer, "SHARE", vehicle_match_id=match.match_id)

    stored = db.get_match(match.match_id)
    assert stored.saved and stored.contacted_seller
    assert not stored.skipped
    assert service.interaction_stats(dealer) == {"total_interactions": 3, "total_saves": 1, "total_skips": 0}


def test_interaction_kept_when_learning_fails(service, dealer, monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("profile store down")

    monkeypatch.setattr(service.learner, "observe", fail)

    interaction = service.record_interaction(dealer, "SKIP")
    assert service.get_interactions(dealer) == [interaction]


def test_interactions_listed_newest_first_with_type_filter(service, dealer):
    service.record_interaction(dealer, "VIEW")
    service.record_interaction(dealer, "SAVE")
    service.record_interaction(dealer, "VIEW")

    views = service.get_interactions(dealer, interaction_type="VIEW")
    assert [i.interaction_type for i in views] == [InteractionType.VIEW, InteractionType.VIEW]
    assert len(service.get_interactions(dealer, limit=2)) == 2


def test_view_match_consumes_quota(service, dealer, db):
    match = service.score_listing(dealer, make_listing())

    results = [service.view_match(dealer, match.match_id, "trial") for _ in range(4)]

    assert [decision.allowed for decision, _ in results] == [True, True, True, False]
    assert results[-1][0].remaining == 0
    assert results[-1][1] is None
    assert results[0][1].viewed
    assert len(db.get_interactions(dealer, interaction_type=InteractionType.VIEW)) == 3


def test_view_match_of_other_dealer_consumes_nothing(service, dealer):
    match = service.score_listing("dealer-2", make_listing())

    with pytest.raises(OwnershipError):
        service.view_match(dealer, match.match_id, "trial")
    assert service.usage_stats(dealer, "trial").viewed_today == 0


def test_explain_match(service, dealer):
    match = service.score_listing(dealer, make_listing())
    lines = service.explain_match(dealer, match.match_id)

    assert lines[0] == "Base match score: 81/100"
    with pytest.raises(OwnershipError):
        service.explain_match("dealer-2", match.match_id)


def test_rebuild_recent_touches_active_dealers(service, dealer, db):
    match = service.score_listing(dealer, make_listing())
    service.record_interaction(dealer, "SAVE", vehicle_match_id=match.match_id)

    assert service.rebuild_recent(days=1) == 1
    assert db.get_learned_preferences(dealer).total_saves == 1
    assert db.get_dealers_with_interactions_since(utcnow() + timedelta(days=1)) == []


def test_learning_progress(service, dealer):
    assert service.learning_progress(dealer).stage == "Getting Started"
    for _ in range(5):
        service.record_interaction(dealer, "VIEW")
    assert service.learning_progress(dealer).stage == "Learning"


def test_concurrent_scoring_stores_one_match_per_pair(service, dealer):
    start = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def score_same_listing():
        start.wait()
        match = service.score_listing(dealer, make_listing())
        with results_lock:
            results.append(match.match_id)

    threads = [threading.Thread(target=score_same_listing) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert len(service.get_matches(dealer)) == 1


def test_dealer_metrics_summarise_matches_and_activity(service, dealer):
    bmw = service.score_listing(dealer, make_listing("bmw"))
    audi = service.score_listing(dealer, make_listing("audi", make="Audi"))
    for interaction_type, match in [
        ("SAVE", bmw), ("SAVE", bmw), ("SKIP", audi), ("VIEW", bmw), ("SAVE", bmw),
    ]:
        service.record_interaction(dealer, interaction_type, vehicle_match_id=match.match_id)

    metrics = service.dealer_metrics(dealer)

    assert metrics.save_rate == 60.0
    assert metrics.has_learning_data
    assert metrics.interactions_by_type == {"SAVE": 3, "SKIP": 1, "VIEW": 1}
    assert metrics.total_recent == 5
    assert metrics.match_stats.total_matches == 2
    assert metrics.match_stats.avg_base_score == 71.0
    assert metrics.match_stats.avg_final_score == 71.0
    assert metrics.to_dict()["learning_progress"]["stage"] == "Learning"


def test_dealer_metrics_for_new_dealer(service, dealer):
    metrics = service.dealer_metrics(dealer)

    assert metrics.learned is None
    assert metrics.save_rate == 0.0
    assert not metrics.has_learning_data
    assert metrics.to_dict()["preferences"] is None
    assert metrics.match_stats.total_matches == 0


def test_get_matches_sorted_by_price(service, dealer):
    for listing_id, price in [("mid", 15000), ("high", 19000), ("low", 9000)]:
        service.score_listing(dealer, make_listing(listing_id, price=price))

    by_price = service.get_matches(dealer, sort_by="price")
    by_score = service.get_matches(dealer)

    assert [m.listing.listing_id for m in by_price] == ["low", "mid", "high"]
    assert [m.listing.listing_id for m in by_score] == ["low", "mid", "high"]
    assert service.count_matches(dealer) == 3
    assert service.count_matches(dealer, min_score=85) == 1


def test_get_matches_rejects_unknown_sort(service, dealer):
    with pytest.raises(ValidationError):
        service.get_matches(dealer, sort_by="mileage")
