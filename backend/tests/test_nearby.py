import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import CABALLITO, LA_PLATA, PALERMO, FakeGeocoder
from repairmatch.models import ClientRequestCreate, TechnicianProfile
from repairmatch.services.nearby import NearbyRequestFeed
from repairmatch.services.request_store import RequestNotFoundError

CLIENT = "client_1"
BELGRANO = (-34.5627, -58.4583)


def _create(controller, client_id=CLIENT, location=None, **overrides):
    body = {
        "title": "Arreglo general",
        "category": "Electricidad",
        "address": "Av. Santa Fe 3200",
        "city": "Buenos Aires",
        "description": "Revisar instalacion.",
    }
    if location is not None:
        body["lat"], body["lng"] = location
    body.update(overrides)
    request, _ = controller.create_request(client_id, ClientRequestCreate.model_validate(body))
    return request


@pytest.fixture
def feed(store):
    return NearbyRequestFeed(store=store, geocoder=FakeGeocoder({"Cabildo": BELGRANO}))


def test_feed_filters_and_sorts_by_urgency_then_distance(controller, feed, store):
    media = _create(controller, location=PALERMO, urgency="media")
    alta = _create(controller, location=CABALLITO, urgency="alta")
    _create(controller, location=LA_PLATA, urgency="alta")
    _create(controller, location=CABALLITO, urgency="alta", radiusKm=2)
    _create(controller, location=PALERMO, mode="direct", targetTechnicianId="tech_2")
    _create(controller, client_id="tech_1", location=PALERMO)
    cancelled = _create(controller, location=PALERMO)
    controller.cancel(cancelled.id, CLIENT)
    geocoded = _create(controller, address="Av. Cabildo 2000", urgency="media")

    response = feed.list_for_technician("tech_1")

    assert [item.id for item in response.requests] == [alta.id, media.id, geocoded.id]
    assert response.requests[0].distance_km == pytest.approx(3.5, abs=0.1)
    assert response.requests[1].distance_km == 0
    assert response.requests[0].match_radius_km == 20
    assert response.warning is None
    assert response.technician.radius_km == 20
    assert response.technician.within_working_hours is True
    assert response.technician.working_hours_label == "Lun a Vie 08:00 - 19:00 | Sab 09:00 - 13:00"
    assert response.technician.service_lat == PALERMO[0]


def test_missing_request_coordinates_are_persisted_without_touching(controller, feed, store):
    request = _create(controller, address="Av. Cabildo 2000")
    feed.list_for_technician("tech_1")

    updated = store.get_request(request.id)
    assert (updated.location_lat, updated.location_lng) == BELGRANO
    assert updated.updated_at == request.updated_at
    assert feed.geocoder.calls == ["Av. Cabildo 2000, Buenos Aires"]


def test_direct_request_is_visible_to_its_target(controller, feed):
    direct = _create(controller, location=PALERMO, mode="direct", targetTechnicianId="tech_2")
    response = feed.list_for_technician("tech_2")
    assert [item.id for item in response.requests] == [direct.id]
    assert response.requests[0].mode == "direct"
    assert response.requests[0].status == "direct_sent"


def test_technician_without_location_gets_warning(store):
    store.save_technician_profile(TechnicianProfile(id="tech_9", full_name="Nuevo", city="Rosario"))
    feed = NearbyRequestFeed(store=store, geocoder=FakeGeocoder())

    response = feed.list_for_technician("tech_9")
    assert response.requests == []
    assert response.warning == "Add a base address and city to enable radius matching."
    assert response.technician.service_lat is None


def test_technician_location_is_geocoded_and_saved(store):
    store.save_technician_profile(TechnicianProfile(id="tech_9", full_name="Nuevo", city="Rosario"))
    feed = NearbyRequestFeed(store=store, geocoder=FakeGeocoder({"Rosario": (-32.95, -60.65)}))

    response = feed.list_for_technician("tech_9")
    assert response.warning is None
    profile = store.get_technician_profile("tech_9")
    assert (profile.service_lat, profile.service_lng) == (-32.95, -60.65)
    assert profile.coverage_area == "Radio de 20 km desde Rosario"


def test_unknown_technician_is_rejected(feed):
    with pytest.raises(RequestNotFoundError):
        feed.list_for_technician("client_1")
