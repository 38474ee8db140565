import pytest

from mataim_chat.chat.controller import ChatController
from mataim_chat.chat.errors import ScreenNotFound
from mataim_chat.chat.models import ConversationTarget
from mataim_chat.chat.registry import ScreenRegistry
from mataim_chat.chat.schemas import ScreenState


pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ScreenRegistry(idle_ttl=60, clock=clock)


@pytest.fixture
def open_screen(gateway, driver_viewer, customer_driver_conversation, settings):
    async def _open(viewer=driver_viewer):
        controller = ChatController(
            gateway, viewer, ConversationTarget(conversation_id="conv-1"), settings=settings
        )
        await controller.mount()
        return controller

    return _open


async def test_screen_is_private_to_its_viewer(registry, open_screen):
    controller = await open_screen()
    screen_id = await registry.add(controller)

    assert registry.get(screen_id, "D1") is controller
    with pytest.raises(ScreenNotFound):
        registry.get(screen_id, "D2")
    with pytest.raises(ScreenNotFound):
        registry.get("unknown", "D1")


async def test_close_disposes_and_forgets(registry, open_screen, gateway):
    controller = await open_screen()
    screen_id = await registry.add(controller)

    await registry.close(screen_id, "D1")

    assert controller.state is ScreenState.DISPOSED
    assert gateway.subscription.closed
    assert len(registry) == 0


async def test_idle_screens_are_disposed_on_next_open(registry, open_screen, clock, gateway):
    idle = await open_screen()
    active = await open_screen()
    idle_id = await registry.add(idle)
    active_id = await registry.add(active)

    clock.now = 45
    registry.get(active_id, "D1")
    clock.now = 90

    await registry.add(await open_screen())

    assert idle.disposed
    assert not active.disposed
    assert gateway.subscriptions[0].closed
    with pytest.raises(ScreenNotFound):
        registry.get(idle_id, "D1")
    assert registry.get(active_id, "D1") is active
    assert len(registry) == 2


async def test_sweep_reports_expired_count(registry, open_screen, clock):
    await registry.add(await open_screen())
    await registry.add(await open_screen())

    assert await registry.sweep() == 0
    clock.now = 61
    assert await registry.sweep() == 2
    assert len(registry) == 0


async def test_close_all_disposes_everything(registry, open_screen):
    screens = [await open_screen() for _ in range(3)]
    for controller in screens:
        await registry.add(controller)

    await registry.close_all()

    assert len(registry) == 0
    assert all(controller.disposed for controller in screens)
