import pytest

from mataim_chat.chat.conversations import ConversationService
from mataim_chat.chat.errors import GatewayError
from mataim_chat.chat.models import Conversation, ViewerRole


pytestmark = pytest.mark.anyio


async def test_get_or_create_creates_once(gateway):
    service = ConversationService(gateway)
    pair = {ViewerRole.CUSTOMER: "C1", ViewerRole.RESTAURANT: "R1"}

    first = await service.get_or_create(pair)
    second = await service.get_or_create(pair)

    assert first[1] is True
    assert second == (first[0], False)
    assert len(gateway.conversations) == 1


async def test_get_or_create_ignores_three_party_rows(gateway, customer_driver_conversation):
    gateway.add_conversation(
        Conversation(id="conv-3", customer_id="C1", restaurant_id="R1", driver_id="D1")
    )

    conversation_id, is_new = await ConversationService(gateway).get_or_create(
        {ViewerRole.CUSTOMER: "C1", ViewerRole.RESTAURANT: "R1"}
    )

    assert is_new
    assert conversation_id not in ("conv-1", "conv-3")


async def test_lost_create_race_returns_the_winner(gateway, monkeypatch):
    async def racing_create(pair):
        gateway.add_conversation(Conversation(id="conv-winner", customer_id="C1", driver_id="D1"))
        raise GatewayError("create_conversation", "duplicate key")

    monkeypatch.setattr(gateway, "create_conversation", racing_create)

    result = await ConversationService(gateway).get_or_create(
        {ViewerRole.CUSTOMER: "C1", ViewerRole.DRIVER: "D1"}
    )

    assert result == ("conv-winner", False)


async def test_create_failure_without_winner_propagates(gateway, monkeypatch):
    async def failing_create(pair):
        raise GatewayError("create_conversation", "boom")

    monkeypatch.setattr(gateway, "create_conversation", failing_create)

    with pytest.raises(GatewayError):
        await ConversationService(gateway).get_or_create(
            {ViewerRole.CUSTOMER: "C1", ViewerRole.DRIVER: "D1"}
        )


@pytest.mark.parametrize(
    "pair",
    [
        {ViewerRole.CUSTOMER: "C1"},
        {ViewerRole.CUSTOMER: "C1", ViewerRole.DRIVER: ""},
    ],
)
async def test_pair_must_name_two_parties(gateway, pair):
    with pytest.raises(ValueError):
        await ConversationService(gateway).get_or_create(pair)


async def test_open_with_same_role_is_refused(gateway, driver_viewer):
    with pytest.raises(ValueError):
        await ConversationService(gateway).open_with(driver_viewer, ViewerRole.DRIVER, "D2")
