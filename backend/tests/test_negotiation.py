import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from repairmatch.models import ClientRequestCreate
from repairmatch.services.negotiation import format_ars, parse_price_ars, validate_offer_terms
from repairmatch.services.request_store import (
    RequestConflictError,
    RequestNotFoundError,
    RequestPermissionError,
    RequestValidationError,
)

CLIENT = "client_1"


def _create(controller, client_id=CLIENT, **overrides):
    body = {
        "title": "Pierde la canilla",
        "category": "Plomería",
        "address": "Av. Rivadavia 5000, Buenos Aires",
        "city": "Buenos Aires",
        "description": "La canilla de la cocina gotea.",
    }
    body.update(overrides)
    request, _ = controller.create_request(client_id, ClientRequestCreate.model_validate(body))
    return request


@pytest.fixture
def matched(controller):
    request = _create(controller)
    matches = controller.ensure_matches(request.id, CLIENT)
    by_technician = {match.technician_id: match for match in matches}
    return request, by_technician


@pytest.fixture
def two_offers(matched, negotiation):
    request, by_technician = matched
    negotiation.submit_offer(request.id, "tech_2", "15.000,50", 48)
    negotiation.submit_offer(request.id, "tech_1", 18000, 24, note="Incluye materiales")
    return request, by_technician


def _quote_statuses(store, request_id):
    return {quote.technician_id: quote.quote_status for quote in store.get_request(request_id).quotes}


def test_submit_offer_moves_request_to_quoted(matched, negotiation, store):
    request, by_technician = matched
    status, match = negotiation.submit_offer(request.id, "tech_2", "15.000,50", 48)

    assert status == "quoted"
    assert match.id == by_technician["tech_2"].id
    assert match.quote_status == "submitted"
    assert match.price_ars == 15000.5
    assert match.eta_hours == 48
    assert match.technician_name == "Plomeria Gomez"

    updated = store.get_request(request.id)
    assert updated.status == "quoted"
    assert updated.timeline[0].label == "Offer received from Plomeria Gomez: $15.000,5 - ETA 48 h."


def test_second_offer_keeps_quoted_and_only_logs(two_offers, store):
    request, _ = two_offers
    updated = store.get_request(request.id)
    assert updated.status == "quoted"
    assert updated.timeline[0].label == "Offer received from Electro Lucia: $18.000 - ETA 24 h."
    assert _quote_statuses(store, request.id) == {"tech_2": "submitted", "tech_1": "submitted", "tech_3": "pending"}


def test_reject_recomputes_parent_status(two_offers, negotiation, store):
    request, by_technician = two_offers

    negotiation.quote_reject(request.id, CLIENT, by_technician["tech_2"].id, reason="Muy caro")
    after_first = store.get_request(request.id)
    assert after_first.status == "quoted"
    assert after_first.timeline[0].label == "Quote from Plomeria Gomez rejected. Reason: Muy caro"

    rejected = negotiation.quote_reject(request.id, CLIENT, by_technician["tech_1"].id)
    after_second = store.get_request(request.id)
    assert rejected.quote_status == "rejected"
    assert after_second.status == "matched"
    assert after_second.assigned_technician_id is None

    with pytest.raises(RequestConflictError):
        negotiation.quote_reject(request.id, CLIENT, by_technician["tech_1"].id)


def test_accept_leaves_a_single_accepted_quote(two_offers, negotiation, store):
    request, by_technician = two_offers
    accepted = negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)

    assert accepted.quote_status == "accepted"
    assert _quote_statuses(store, request.id) == {"tech_2": "accepted", "tech_1": "rejected", "tech_3": "pending"}
    updated = store.get_request(request.id)
    assert updated.status == "selected"
    assert updated.selected_match_id == by_technician["tech_2"].id
    assert updated.assigned_technician_id == "tech_2"
    assert updated.assigned_technician_phone == "+54 11 5555-0202"
    assert updated.timeline[0].label == "Quote from Plomeria Gomez accepted: $15.000,5 - ETA 48 h."

    with pytest.raises(RequestConflictError, match="already accepted"):
        negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)


def test_accepting_another_quote_replaces_the_previous_one(two_offers, negotiation, store):
    request, by_technician = two_offers
    negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)
    negotiation.quote_accept(request.id, CLIENT, by_technician["tech_1"].id)

    statuses = _quote_statuses(store, request.id)
    assert list(statuses.values()).count("accepted") == 1
    assert statuses["tech_1"] == "accepted"
    assert statuses["tech_2"] == "rejected"
    assert store.get_request(request.id).assigned_technician_id == "tech_1"


def test_accept_is_blocked_once_work_is_scheduled(two_offers, negotiation, controller):
    request, by_technician = two_offers
    negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)
    controller.advance(request.id, CLIENT)
    with pytest.raises(RequestValidationError, match="Quotes cannot change"):
        negotiation.quote_accept(request.id, CLIENT, by_technician["tech_1"].id)


def test_counter_offer_updates_terms_and_status(matched, negotiation, store):
    request, by_technician = matched
    match = negotiation.counter_offer(request.id, CLIENT, by_technician["tech_3"].id, "1.234,567", "12,6", note="Sabado")

    assert match.quote_status == "submitted"
    assert match.price_ars == 1234.57
    assert match.eta_hours == 13
    updated = store.get_request(request.id)
    assert updated.status == "quoted"
    assert updated.timeline[0].label == "Counter-offer sent to Sofia Herrera: $1.234,57 - ETA 13 h. Note: Sabado"


def test_counter_offer_clears_previous_selection(two_offers, negotiation, store):
    request, by_technician = two_offers
    negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)
    negotiation.counter_offer(request.id, CLIENT, by_technician["tech_1"].id, 17000, 30)

    updated = store.get_request(request.id)
    assert updated.status == "quoted"
    assert updated.assigned_technician_id is None
    assert updated.selected_match_id is None


@pytest.mark.parametrize(
    "price,eta,message",
    [
        (0, 10, "valid price"),
        (-100, 10, "valid price"),
        ("gratis", 10, "valid price"),
        (1000, 0, "between 1 and 720"),
        (1000, 721, "between 1 and 720"),
        (1000, "pronto", "between 1 and 720"),
    ],
)
def test_counter_offer_rejects_invalid_terms(matched, negotiation, store, price, eta, message):
    request, by_technician = matched
    with pytest.raises(RequestValidationError, match=message):
        negotiation.counter_offer(request.id, CLIENT, by_technician["tech_3"].id, price, eta)
    assert store.get_request(request.id).status == "matched"


@pytest.mark.parametrize("eta,expected", [(1, 1), (1.4, 1), (719.6, 720), (720, 720), ("36", 36)])
def test_offer_eta_is_rounded_within_range(eta, expected):
    assert validate_offer_terms(100, eta) == (100, expected)


def test_submit_offer_requires_technician_profile(matched, negotiation):
    request, _ = matched
    with pytest.raises(RequestNotFoundError):
        negotiation.submit_offer(request.id, "client_9", 1000, 5)


def test_submit_offer_rejects_own_request(controller, negotiation):
    request = _create(controller, client_id="tech_3")
    with pytest.raises(RequestPermissionError, match="your own request"):
        negotiation.submit_offer(request.id, "tech_3", 1000, 5)


def test_submit_offer_on_direct_request_is_limited_to_target(controller, negotiation, store):
    request = _create(controller, mode="direct", targetTechnicianId="tech_1")
    with pytest.raises(RequestPermissionError):
        negotiation.submit_offer(request.id, "tech_2", 1000, 5)

    status, match = negotiation.submit_offer(request.id, "tech_1", 9000, 4)
    assert status == "quoted"
    assert match.technician_id == "tech_1"
    updated = store.get_request(request.id)
    assert updated.direct_expires_at is None
    assert updated.target_technician_id == "tech_1"


def test_submit_offer_rejected_after_selection_or_cancel(two_offers, negotiation, controller):
    request, by_technician = two_offers
    negotiation.quote_accept(request.id, CLIENT, by_technician["tech_2"].id)
    with pytest.raises(RequestValidationError, match="no longer accepts offers"):
        negotiation.submit_offer(request.id, "tech_3", 1000, 5)

    other = _create(controller, title="Otra")
    controller.cancel(other.id, CLIENT)
    with pytest.raises(RequestValidationError, match="no longer accepts offers"):
        negotiation.submit_offer(other.id, "tech_3", 1000, 5)


def test_price_parsing_and_formatting():
    assert parse_price_ars("$ 15.000,50") == 15000.5
    assert parse_price_ars(12500) == 12500
    assert parse_price_ars("") is None
    assert parse_price_ars(True) is None
    assert parse_price_ars("1,5,0") is None
    assert format_ars(15000) == "$15.000"
    assert format_ars(15000.5) == "$15.000,5"
    assert format_ars(1234567.25) == "$1.234.567,25"
