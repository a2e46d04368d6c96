from datetime import datetime, timezone

import pytest

from dealer_matching.config import AppConfig
from dealer_matching.memory import InMemoryDatabase
from dealer_matching.models import DealerPreferences, VehicleListing
from dealer_matching.pipeline import MatchingService
from dealer_matching.quota import QuotaGuard


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_listing(listing_id="l1", make="BMW", model="3 Series", year=2019, price=18000, mileage=40000, **kwargs):
    return VehicleListing(
        listing_id=listing_id,
        make=make,
        model=model,
        year=year,
        price=price,
        mileage=mileage,
        **kwargs,
    )


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 10, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def bmw_preferences():
    return DealerPreferences(
        dealer_id="dealer-1",
        preferred_makes={"BMW"},
        min_year=2018,
        max_price=20000,
        max_mileage=60000,
    )


@pytest.fixture
def service(db, config, clock):
    return MatchingService(db=db, config=config, quota=QuotaGuard(db=db, clock=clock))
