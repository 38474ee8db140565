"""
In-memory, per-screen list of chat messages.

The store keeps messages ordered by `created_at` and reconciles the two
representations a sent message goes through: the optimistic entry the
viewer sees immediately (temporary `temp-...` id, `pending`) and the
confirmed row the backend returns. Realtime delivery is at-least-once and
may beat the insert response, so every merge is idempotent by server id and
the viewer's own pushes are never merged.
"""

import itertools
import logging
from bisect import bisect_right
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from .errors import DuplicateLocalId
from .models import (
    DeliveryStatus,
    Message,
    MessageType,
    Participant,
    SenderProfile,
    utcnow,
)


logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "temp-"


class MergeResult(str, Enum):
    ADDED = "added"
    BUFFERED = "buffered"
    OWN_MESSAGE = "own_message"
    FOREIGN_SENDER = "foreign_sender"
    DUPLICATE = "duplicate"


def _ts(message: Message) -> datetime:
    ts = message.created_at
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def is_local_id(message_id: str) -> bool:
    return message_id.startswith(LOCAL_ID_PREFIX)


class MessageStore:
    def __init__(self, conversation_id: Optional[str] = None):
        self.conversation_id = conversation_id
        self._messages: list[Message] = []
        self._issued: set[str] = set()
        self._counter = itertools.count(1)
        # realtime pushes that arrived before a participant was resolved
        self._early: dict[str, Message] = {}
        self._arrivals: list[str] = []

    # read access
    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending_ids(self) -> list[str]:
        return [m.id for m in self._messages if m.is_pending]

    @property
    def buffered_count(self) -> int:
        return len(self._early)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return self._position(message_id) is not None

    def get(self, message_id: str) -> Optional[Message]:
        pos = self._position(message_id)
        return None if pos is None else self._messages[pos]

    def pop_arrivals(self) -> list[str]:
        arrivals, self._arrivals = self._arrivals, []
        return arrivals

    # internals
    def _position(self, message_id: str) -> Optional[int]:
        for pos, message in enumerate(self._messages):
            if message.id == message_id:
                return pos
        return None

    def _insert_ordered(self, message: Message) -> None:
        pos = bisect_right(self._messages, _ts(message), key=_ts)
        self._messages.insert(pos, message)

    def _restore_order(self, pos: int) -> None:
        before_ok = pos == 0 or _ts(self._messages[pos - 1]) <= _ts(self._messages[pos])
        after_ok = pos == len(self._messages) - 1 or _ts(self._messages[pos]) <= _ts(
            self._messages[pos + 1]
        )
        if not (before_ok and after_ok):
            # stable: equal timestamps keep their relative order
            self._messages.sort(key=_ts)

    # operations
    def next_local_id(self, viewer_id: str) -> str:
        while True:
            local_id = f"{LOCAL_ID_PREFIX}{viewer_id}-{next(self._counter)}"
            if local_id not in self._issued:
                return local_id

    def load_initial(
        self,
        messages: Iterable[Message],
        participant: Optional[Participant],
        viewer_id: str,
    ) -> None:
        """
        Replace the whole list with `messages`, keeping only the viewer's and
        the participant's. Without a participant nothing is filtered out.

        Buffered early pushes from the participant are reconciled in.
        """
        seen: set[str] = set()
        kept: list[Message] = []
        dropped = 0

        for message in messages:
            if message.id in seen:
                continue
            if participant is not None and message.sender_id not in (viewer_id, participant.id):
                dropped += 1
                continue
            seen.add(message.id)
            kept.append(message)

        kept.sort(key=_ts)
        self._messages = kept
        self._arrivals = []

        if participant is None:
            logger.warning(
                f"store_load_unfiltered conversation={self.conversation_id} count={len(kept)}"
            )
            return

        if dropped:
            logger.info(
                f"store_load_filtered conversation={self.conversation_id} "
                f"kept={len(kept)} dropped={dropped}"
            )

        early, self._early = self._early, {}
        for message in early.values():
            if message.sender_id == participant.id and message.id not in seen:
                self._insert_ordered(message)
                self._arrivals.append(message.id)
                seen.add(message.id)

    def append_optimistic(
        self,
        local_id: Optional[str],
        body: str,
        viewer_id: str,
        message_type: MessageType = MessageType.TEXT,
        sender: Optional[SenderProfile] = None,
    ) -> str:
        """Append a pending entry under a temporary id and return the id."""
        if local_id is None:
            local_id = self.next_local_id(viewer_id)
        elif local_id in self._issued:
            raise DuplicateLocalId(local_id)
        self._issued.add(local_id)

        created_at = utcnow()
        if self._messages and _ts(self._messages[-1]) > created_at:
            # keep the entry last even when the server clock runs ahead
            created_at = _ts(self._messages[-1])

        self._messages.append(
            Message(
                id=local_id,
                conversation_id=self.conversation_id or "",
                sender_id=viewer_id,
                body=body,
                message_type=message_type,
                created_at=created_at,
                sender=sender,
                status=DeliveryStatus.PENDING,
            )
        )
        return local_id

    def confirm(self, local_id: str, server_message: Message) -> None:
        """Swap the pending entry for the confirmed row, in place."""
        if server_message.is_pending:
            server_message = server_message.model_copy(update={"status": DeliveryStatus.SENT})

        pos = self._position(local_id)
        existing = self._position(server_message.id)

        if pos is None:
            # store was reloaded since the send started
            if existing is None:
                self._insert_ordered(server_message)
            return

        if existing is not None and existing != pos:
            del self._messages[pos]
            return

        self._messages[pos] = server_message
        self._restore_order(pos)

    def reject(self, local_id: str) -> Optional[Message]:
        """Drop a pending entry after a failed send; returns it so its body can be restored."""
        pos = self._position(local_id)
        if pos is None or not self._messages[pos].is_pending:
            return None
        return self._messages.pop(pos)

    def merge_remote(
        self,
        server_message: Message,
        viewer_id: str,
        participant: Optional[Participant],
    ) -> MergeResult:
        """Merge one realtime push."""
        if server_message.sender_id == viewer_id:
            return MergeResult.OWN_MESSAGE

        if participant is None:
            if server_message.id not in self and server_message.id not in self._early:
                self._early[server_message.id] = server_message
            return MergeResult.BUFFERED

        if server_message.sender_id != participant.id:
            return MergeResult.FOREIGN_SENDER

        if server_message.id in self:
            return MergeResult.DUPLICATE

        self._insert_ordered(server_message)
        self._arrivals.append(server_message.id)
        return MergeResult.ADDED
