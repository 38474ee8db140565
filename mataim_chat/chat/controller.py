"""
Lifecycle glue for one open chat screen.

A controller owns exactly one MessageStore and at most one realtime
subscription. It is driven by three events from the client, mount, focus
and dispose, plus sends. Every gateway call is awaited on the caller's event
loop; realtime callbacks, retries, enrichment and notifications run as
tracked background tasks that `dispose()` cancels. The one exception is the
notification for a send whose insert completed after dispose.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Coroutine, Optional

from mataim_chat.core.config import Settings, get_settings

from .conversations import ConversationService
from .errors import (
    ChatError,
    GatewayError,
    NoParticipant,
    ParticipantResolutionError,
    UploadError,
)
from .gateway import ChatGateway, Row, Subscription, SubscriptionStatus, message_from_row
from .models import (
    Conversation,
    ConversationTarget,
    Message,
    MessageType,
    Participant,
    ViewerContext,
    ViewerRole,
)
from .participants import enrich_participant, needs_enrichment, resolve_participant
from .schemas import BANNERS, Alert, ChatView, ScreenState, SendOutcome
from .store import MergeResult, MessageStore


logger = logging.getLogger(__name__)

IMAGE_SUMMARY = "📷 Sent a photo"
LOAD_ERROR = "Could not load conversation"
FETCH_ERROR = "Failed to load conversation"
SEND_ERROR = "Failed to send message"
IMAGE_SEND_ERROR = "Failed to send image. Please try again."

# notifications still in flight for screens that were already disposed
_detached: set[asyncio.Task] = set()


class ChatController:
    def __init__(
        self,
        gateway: ChatGateway,
        viewer: ViewerContext,
        target: ConversationTarget,
        *,
        notifier=None,
        media=None,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.viewer = viewer
        self.target = target
        self.notifier = notifier
        self.media = media
        self.settings = settings or get_settings()

        self.state = ScreenState.UNINITIALIZED
        self.conversation: Optional[Conversation] = None
        self.participant: Optional[Participant] = None
        self.store = MessageStore(target.conversation_id)
        self.error: Optional[str] = None
        self.alerts: list[Alert] = []

        self._disposed = False
        self._subscription: Optional[Subscription] = None
        self._subscribed_key: Optional[tuple] = None
        self._generation = 0
        self._retry_count = 0
        self._retry_scheduled = False
        self._tasks: set[asyncio.Task] = set()

    # read side
    @property
    def conversation_id(self) -> Optional[str]:
        return self.store.conversation_id

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def subscribe_attempts(self) -> int:
        return self._retry_count

    def view(self) -> ChatView:
        """Snapshot for rendering. Alerts and arrivals are handed out once."""
        alerts, self.alerts = self.alerts, []
        return ChatView(
            state=self.state,
            banner=BANNERS.get(self.state),
            conversation_id=self.conversation_id,
            participant=self.participant,
            messages=list(self.store.messages),
            arrivals=self.store.pop_arrivals(),
            alerts=alerts,
            error=self.error,
        )

    # lifecycle
    async def mount(self) -> None:
        if self.state is not ScreenState.UNINITIALIZED or self._disposed:
            return

        self._set_state(ScreenState.RESOLVING_CONVERSATION)
        try:
            conversation_id = await self._resolve_conversation_id()
            if self._disposed:
                return
            self.store.conversation_id = conversation_id
            loaded = await self._load(initial=True)
        except ParticipantResolutionError as e:
            self._fail(LOAD_ERROR, e)
            return
        except (GatewayError, ValueError) as e:
            self._fail(FETCH_ERROR, e)
            return

        if not loaded or self._disposed:
            return

        await self._ensure_subscription()
        self._spawn(self._mark_read(), "mark_read")

    async def focus(self) -> None:
        """Every focus assumes stale data and reloads from the gateway."""
        if self._disposed:
            return

        if self.state in (ScreenState.UNINITIALIZED, ScreenState.FAILED):
            self.error = None
            self.state = ScreenState.UNINITIALIZED
            await self.mount()
            return

        await self.refresh()

    async def refresh(self) -> None:
        if self._disposed or self.conversation_id is None:
            return

        try:
            loaded = await self._load(initial=False)
        except ParticipantResolutionError as e:
            await self._close_subscription()
            self._fail(LOAD_ERROR, e)
            return
        except GatewayError as e:
            logger.error(f"chat_refresh_failed conversation={self.conversation_id} error={e}")
            self._alert("Error", FETCH_ERROR)
            return

        if not loaded or self._disposed:
            return

        await self._ensure_subscription()
        self._spawn(self._mark_read(), "mark_read")

    async def dispose(self) -> None:
        if self._disposed:
            return

        self._disposed = True
        self.state = ScreenState.DISPOSED
        await self._close_subscription()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"chat_screen_disposed conversation={self.conversation_id} viewer={self.viewer.id}")

    async def settle(self) -> None:
        """Wait until no background work (including work it spawned) is pending."""
        current = asyncio.current_task()
        while True:
            pending = [task for task in self._tasks if task is not current and not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # sending
    async def send_text(self, text: str) -> SendOutcome:
        body = (text or "").strip()
        if not body or not self._can_send():
            return SendOutcome(ok=False, restore_text=text)

        local_id = self.store.append_optimistic(
            None, body, self.viewer.id, sender=self.viewer.as_sender()
        )
        try:
            message = await self.gateway.insert_message(
                self.conversation_id, self.viewer.id, body, MessageType.TEXT
            )
        except GatewayError as e:
            return self._send_failed(local_id, text, SEND_ERROR, e)

        return await self._sent(local_id, message, body)

    async def send_image(
        self, content: bytes, filename: str, content_type: str = "image/jpeg"
    ) -> SendOutcome:
        if not self._can_send():
            return SendOutcome(ok=False)
        if self.media is None:
            self._alert("Error", IMAGE_SEND_ERROR)
            return SendOutcome(ok=False, error=IMAGE_SEND_ERROR)

        local_id = self.store.append_optimistic(
            None,
            filename,
            self.viewer.id,
            message_type=MessageType.IMAGE,
            sender=self.viewer.as_sender(),
        )
        try:
            image_url = await self.media.upload(content, filename, content_type)
            message = await self.gateway.insert_message(
                self.conversation_id, self.viewer.id, image_url, MessageType.IMAGE
            )
        except (UploadError, GatewayError) as e:
            return self._send_failed(local_id, None, IMAGE_SEND_ERROR, e)

        return await self._sent(local_id, message, IMAGE_SUMMARY)

    def _can_send(self) -> bool:
        return (
            not self._disposed
            and self.conversation_id is not None
            and self.participant is not None
            and self.state is not ScreenState.FAILED
        )

    async def _sent(self, local_id: str, message: Message, summary: str) -> SendOutcome:
        # after dispose only local state is frozen; summary and notification still go out
        if not self._disposed:
            self.store.confirm(local_id, message)

        try:
            await self.gateway.update_conversation_summary(
                self.conversation_id, summary, datetime.now(timezone.utc)
            )
        except GatewayError as e:
            logger.warning(f"conversation_summary_update_failed conversation={self.conversation_id} error={e}")

        self._notify(summary)
        return SendOutcome(ok=True, message=message)

    def _send_failed(
        self, local_id: str, body: Optional[str], alert: str, error: Exception
    ) -> SendOutcome:
        logger.error(f"chat_send_failed conversation={self.conversation_id} local_id={local_id} error={error}")
        if not self._disposed:
            self.store.reject(local_id)
            self._alert("Error", alert)
        return SendOutcome(ok=False, error=alert, restore_text=body)

    def _notify(self, body: str) -> None:
        if self.notifier is None or self.participant is None:
            return
        coro = self.notifier.send_message_notification(
            self.conversation_id,
            self.viewer.id,
            body,
            self.viewer.display_name,
            self.viewer.role,
            self.participant.id,
            self.participant.role,
        )
        if self._disposed:
            # not tracked, so dispose() cannot cancel it
            task = asyncio.create_task(coro)
            _detached.add(task)
            task.add_done_callback(partial(self._finished, "notify"))
            return
        self._spawn(coro, "notify")

    # loading
    async def _resolve_conversation_id(self) -> str:
        target = self.target
        if target.conversation_id:
            return target.conversation_id

        counterpart_role = target.counterpart_role
        counterpart_id = target.counterpart_id

        if counterpart_id is None and target.order_id:
            counterpart_role = ViewerRole.CUSTOMER
            counterpart_id = await self.gateway.fetch_order_customer(target.order_id)

        if not counterpart_id or counterpart_role is None:
            raise NoParticipant(f"order-{target.order_id}" if target.order_id else "new", self.viewer.role.value)

        conversation_id, is_new = await ConversationService(self.gateway).open_with(
            self.viewer, counterpart_role, counterpart_id
        )
        logger.info(f"chat_conversation_opened id={conversation_id} is_new={is_new}")
        return conversation_id

    async def _load(self, initial: bool) -> bool:
        conversation = await self.gateway.get_conversation(self.conversation_id)
        if self._disposed:
            return False

        if initial:
            self._set_state(ScreenState.RESOLVING_PARTICIPANT)
        self.conversation = conversation
        self._apply_participant(resolve_participant(conversation, self.viewer.role))

        if initial:
            self._set_state(ScreenState.LOADING_MESSAGES)
        messages = await self.gateway.fetch_messages(conversation.id)
        if self._disposed:
            return False

        self.store.load_initial(messages, self.participant, self.viewer.id)
        return True

    def _apply_participant(self, participant: Participant) -> None:
        current = self.participant
        if current is not None and current.identity == participant.identity:
            # keep late-arriving contact details across reloads
            if current.phone and not participant.phone:
                participant = participant.model_copy(update={"phone": current.phone})
            self.participant = participant
            return

        if current is not None:
            logger.warning(
                f"chat_participant_changed conversation={self.conversation_id} "
                f"old={current.id} new={participant.id}"
            )
        self.participant = participant
        if needs_enrichment(participant):
            self._spawn(self._enrich(participant), "enrich_participant")

    async def _enrich(self, participant: Participant) -> None:
        enriched = await enrich_participant(self.gateway, participant)
        if enriched is None or self._disposed:
            return
        if self.participant is None or self.participant.identity != enriched.identity:
            return
        self.participant = self.participant.model_copy(update={"phone": enriched.phone})

    async def _mark_read(self) -> None:
        try:
            await self.gateway.mark_messages_read(self.conversation_id, self.viewer.id)
        except GatewayError as e:
            logger.warning(f"mark_read_failed conversation={self.conversation_id} error={e}")

    # realtime
    async def _ensure_subscription(self) -> None:
        if self._disposed or self.conversation_id is None or self.participant is None:
            return

        key = (self.conversation_id, self.participant.identity)
        if key == self._subscribed_key:
            return

        await self._close_subscription()
        self._retry_count = 0
        await self._subscribe(key)

    async def _subscribe(self, key: tuple) -> None:
        self._generation += 1
        generation = self._generation
        self._subscribed_key = key
        self._retry_scheduled = False

        try:
            subscription = await self.gateway.subscribe_messages(
                key[0],
                on_insert=partial(self._on_insert, generation),
                on_status=partial(self._on_status, generation),
            )
        except GatewayError as e:
            self._on_status(generation, SubscriptionStatus.CHANNEL_ERROR, e)
            return

        if self._disposed or generation != self._generation:
            await subscription.close()
            return
        self._subscription = subscription

    async def _close_subscription(self) -> None:
        # invalidate callbacks first; closing a channel reports CLOSED
        self._generation += 1
        self._subscribed_key = None
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def _release_channel(self) -> None:
        """
        Drop a channel that gave up, but keep `_subscribed_key` so a reload
        with the same identity does not resubscribe. A `_subscribe` still
        awaiting its channel sees the bumped generation and closes it itself.
        """
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    def _on_status(
        self, generation: int, status: SubscriptionStatus, error: Optional[Exception] = None
    ) -> None:
        if self._disposed or generation != self._generation:
            return

        if status is SubscriptionStatus.SUBSCRIBED:
            self._retry_count = 0
            self._set_state(ScreenState.SUBSCRIBED)
            logger.info(f"realtime_subscribed conversation={self.conversation_id}")
            return

        if self._retry_scheduled:
            return

        if self._retry_count >= self.settings.realtime_max_retries:
            self._set_state(ScreenState.OFFLINE)
            logger.warning(
                f"realtime_offline conversation={self.conversation_id} "
                f"attempts={self._retry_count} status={status.value} error={error}"
            )
            self._spawn(self._release_channel(), "release_channel")
            return

        self._retry_count += 1
        self._retry_scheduled = True
        delay = self.settings.realtime_retry_delay * self._retry_count
        self._set_state(ScreenState.RECONNECTING)
        logger.warning(
            f"realtime_retry conversation={self.conversation_id} attempt={self._retry_count} "
            f"delay={delay}s status={status.value} error={error}"
        )
        self._spawn(self._resubscribe(generation, delay), "resubscribe")

    async def _resubscribe(self, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._disposed or generation != self._generation:
            return

        key = self._subscribed_key
        await self._close_subscription()
        if key is not None:
            await self._subscribe(key)

    def _on_insert(self, generation: int, row: Row) -> None:
        if self._disposed or generation != self._generation:
            return

        try:
            message = message_from_row(row)
        except ValueError as e:
            logger.warning(f"realtime_row_rejected conversation={self.conversation_id} error={e}")
            return

        if message.sender_id == self.viewer.id or message.id in self.store:
            return
        if self.participant is not None and message.sender_id != self.participant.id:
            logger.info(f"realtime_foreign_sender_ignored conversation={self.conversation_id} sender={message.sender_id}")
            return

        self._spawn(self._merge_push(message), "merge_push")

    async def _merge_push(self, message: Message) -> None:
        try:
            complete = await self.gateway.fetch_message(message.id)
        except GatewayError as e:
            logger.warning(f"realtime_fetch_failed message={message.id} error={e}")
            complete = None

        if self._disposed:
            return

        result = self.store.merge_remote(complete or message, self.viewer.id, self.participant)
        logger.debug(f"realtime_merge message={message.id} result={result.value}")
        if result is MergeResult.ADDED:
            self._spawn(self._mark_read(), "mark_read")

    # helpers
    def _set_state(self, state: ScreenState) -> None:
        if self._disposed or self.state is state:
            return
        logger.debug(f"chat_state conversation={self.conversation_id} {self.state.value}->{state.value}")
        self.state = state

    def _fail(self, message: str, error: Exception) -> None:
        if self._disposed:
            return
        logger.error(f"chat_init_failed target={self.target.model_dump()} error={error}")
        self.error = message
        self.state = ScreenState.FAILED

    def _alert(self, title: str, message: str) -> None:
        self.alerts.append(Alert(title=title, message=message))

    def _spawn(self, coro: Coroutine, name: str) -> None:
        if self._disposed:
            coro.close()
            return
        # the coroutine itself is the task, so a cancel before its first step closes it
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(partial(self._finished, name))

    def _finished(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        _detached.discard(task)
        if task.cancelled():
            return

        error = task.exception()
        if error is None:
            return
        if isinstance(error, ChatError):
            logger.error(f"chat_task_failed task={name} conversation={self.conversation_id} error={error}")
        else:
            logger.error(
                f"chat_task_crashed task={name} conversation={self.conversation_id}",
                exc_info=error,
            )
