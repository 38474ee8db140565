import pytest

from mataim_chat.chat.errors import AmbiguousParticipant, GatewayError, NoParticipant
from mataim_chat.chat.models import (
    Conversation,
    CustomerProfile,
    DriverProfile,
    Participant,
    RestaurantProfile,
    ViewerRole,
)
from mataim_chat.chat.participants import (
    candidate_roles,
    enrich_participant,
    needs_enrichment,
    resolve_participant,
)


def test_candidate_roles_exclude_viewer():
    assert candidate_roles(ViewerRole.DRIVER) == [ViewerRole.CUSTOMER, ViewerRole.RESTAURANT]


def test_driver_sees_customer(customer_driver_conversation):
    participant = resolve_participant(customer_driver_conversation, ViewerRole.DRIVER)

    assert participant.identity == ("C1", ViewerRole.CUSTOMER)
    assert participant.display_name == "Carl Customer"
    assert participant.phone == "555-0101"


def test_customer_sees_driver_with_vehicle_details(customer_driver_conversation):
    participant = resolve_participant(customer_driver_conversation, ViewerRole.CUSTOMER)

    assert participant.role is ViewerRole.DRIVER
    assert participant.display_name == "Dana Driver"
    assert participant.vehicle_type == "bike"
    assert participant.rating == 4.8


def test_customer_sees_restaurant(customer_restaurant_conversation):
    participant = resolve_participant(customer_restaurant_conversation, ViewerRole.CUSTOMER)

    assert participant.identity == ("R1", ViewerRole.RESTAURANT)
    assert participant.display_name == "Rosa's"
    assert participant.avatar == "https://img/r1.jpg"
    assert participant.phone is None
    assert needs_enrichment(participant)


def test_missing_profile_falls_back_to_role_label():
    conversation = Conversation(id="c", restaurant_id="R1", driver_id="D1")
    participant = resolve_participant(conversation, ViewerRole.RESTAURANT)

    assert participant.display_name == "Driver"
    assert participant.avatar is None


def test_both_candidates_populated_is_ambiguous():
    conversation = Conversation(id="c", customer_id="C1", restaurant_id="R1", driver_id="D1")

    with pytest.raises(AmbiguousParticipant) as exc:
        resolve_participant(conversation, ViewerRole.DRIVER)

    assert exc.value.candidates == ["customer", "restaurant"]


def test_no_candidate_populated_is_an_error():
    conversation = Conversation(id="c", driver_id="D1")

    with pytest.raises(NoParticipant):
        resolve_participant(conversation, ViewerRole.DRIVER)


def test_viewer_column_alone_does_not_count():
    conversation = Conversation(
        id="c",
        customer_id="C1",
        customer=CustomerProfile(id="C1"),
        restaurant=RestaurantProfile(id="R1"),
        driver=DriverProfile(id="D1"),
    )

    with pytest.raises(NoParticipant):
        resolve_participant(conversation, ViewerRole.CUSTOMER)


@pytest.mark.anyio
async def test_enrich_restaurant_phone(gateway):
    gateway.owner_phones["R1"] = "555-0199"
    participant = Participant(id="R1", role=ViewerRole.RESTAURANT, display_name="Rosa's")

    enriched = await enrich_participant(gateway, participant)

    assert enriched.phone == "555-0199"
    assert enriched.identity == participant.identity


@pytest.mark.anyio
async def test_enrich_skips_non_restaurants(gateway):
    participant = Participant(id="C1", role=ViewerRole.CUSTOMER, display_name="Carl")
    assert await enrich_participant(gateway, participant) is None


@pytest.mark.anyio
async def test_enrich_lookup_failure_yields_none(gateway, monkeypatch):
    async def broken(restaurant_id):
        raise GatewayError("fetch_owner_phone", "boom")

    monkeypatch.setattr(gateway, "fetch_owner_phone", broken)
    participant = Participant(id="R1", role=ViewerRole.RESTAURANT, display_name="Rosa's")

    assert await enrich_participant(gateway, participant) is None
