import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

# The app singletons read these at import time.
os.environ.setdefault("REQUESTS_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="repairmatch-tests-"), "requests.sqlite3"))
os.environ.setdefault("GEOCODER_ENABLED", "false")
os.environ.setdefault("WATCHDOG_BACKGROUND_INTERVAL_SECONDS", "0")

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from repairmatch.services.geocoder import GeocodeResult
from repairmatch.services.lifecycle import RequestLifecycleController
from repairmatch.services.negotiation import QuoteNegotiationHandler
from repairmatch.services.request_store import RequestStore

# Wednesday 14:00 in Buenos Aires.
WEDNESDAY_AFTERNOON = datetime(2026, 3, 4, 17, 0, tzinfo=timezone.utc)

PALERMO = (-34.5889, -58.4306)
CABALLITO = (-34.6186, -58.4420)
LA_PLATA = (-34.9205, -57.9536)


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeGeocoder:
    """Resolves queries containing a known key; records every lookup."""

    def __init__(self, places=None):
        self.places = dict(places or {})
        self.calls = []

    def geocode_first_result(self, query):
        self.calls.append(query)
        for key, (lat, lng) in self.places.items():
            if key in query:
                return GeocodeResult(lat=lat, lng=lng, display_name=query)
        return None


@pytest.fixture
def clock():
    return FakeClock(WEDNESDAY_AFTERNOON)


@pytest.fixture
def store(tmp_path, clock):
    return RequestStore(db_path=str(tmp_path / "requests.sqlite3"), clock=clock)


@pytest.fixture
def empty_store(tmp_path, clock):
    return RequestStore(db_path=str(tmp_path / "empty.sqlite3"), seed_demo_data=False, clock=clock)


@pytest.fixture
def negotiation(store):
    return QuoteNegotiationHandler(store=store)


@pytest.fixture
def controller(store, negotiation):
    return RequestLifecycleController(store=store, negotiation=negotiation)
