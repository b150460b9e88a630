"""
channel.py — the Messaging Channel: an append-only, time-ordered message log.

Visibility (applied to both history and the live stream):
- Admin viewers see the whole log, unfiltered.
- Everyone else sees only messages sent at or after their session start,
  and of those only broadcasts, messages addressed to them, and their own.

"Addressed to them" is decided by `recipient_id`, the user id the recipient
callsign pointed at when the message was sent. The callsign string is kept
as the display label.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import MAX_PAYLOAD_BYTES
from .errors import AttachmentTooLarge, EmptyMessage, InvalidCallsign
from .identity import BROADCAST, IdentityStore, canonical_callsign
from .store import DocumentStore, Subscription

log = logging.getLogger("gatechat.channel")

MESSAGE_LOGS = "messageLogs"


@dataclass
class Attachment:
    name: str
    mime_type: str
    blob: bytes


@dataclass
class Message:
    id: str
    sender: str
    user_id: str
    recipient: str
    content: str
    sent_at: float
    recipient_id: Optional[str] = None
    attachment: Optional[Attachment] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "Message":
        att = doc.get("attachment")
        return cls(
            id=doc["id"],
            sender=doc["sender"],
            user_id=doc["user_id"],
            recipient=doc["recipient"],
            content=doc["content"],
            sent_at=doc["sent_at"],
            recipient_id=doc.get("recipient_id"),
            attachment=Attachment(**att) if att else None,
        )


@dataclass(frozen=True)
class Viewer:
    user_id: str
    callsign: str
    is_admin: bool
    session_started_at: float


def visible_to(doc: dict, viewer: Viewer) -> bool:
    if viewer.is_admin:
        return True
    if doc["sent_at"] < viewer.session_started_at:
        return False
    return (
        doc["recipient"] == BROADCAST
        or doc["user_id"] == viewer.user_id
        or (doc.get("recipient_id") is not None and doc["recipient_id"] == viewer.user_id)
    )


class MessageStream:
    """Async iterator of Message objects for one viewer."""

    def __init__(self, subscription: Subscription) -> None:
        self._sub = subscription

    def __aiter__(self) -> "MessageStream":
        return self

    async def __anext__(self) -> Message:
        return Message.from_doc(await self._sub.__anext__())

    async def next(self, timeout: Optional[float] = None) -> Message:
        return Message.from_doc(await self._sub.next(timeout))

    def close(self) -> None:
        self._sub.close()


class MessageChannel:
    def __init__(self, store: DocumentStore, identity: IdentityStore, max_attachment_bytes: int = MAX_PAYLOAD_BYTES) -> None:
        self.store = store
        self.identity = identity
        self.max_attachment_bytes = max_attachment_bytes

    def _resolve(self, recipient: str) -> Tuple[str, Optional[str]]:
        label = (recipient or BROADCAST).strip().upper() or BROADCAST
        if label == BROADCAST:
            return BROADCAST, None
        try:
            label = canonical_callsign(label)
        except InvalidCallsign:
            raise InvalidCallsign(f"Unknown recipient format: {recipient!r}") from None
        return label, self.identity.owner_of(label)

    async def send(
        self,
        sender_user_id: str,
        sender_callsign: str,
        recipient: str,
        content: str,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        content = (content or "").strip()
        if not content and attachment is None:
            raise EmptyMessage("Message has no content and no attachment")
        if attachment is not None and len(attachment.blob) > self.max_attachment_bytes:
            raise AttachmentTooLarge(
                f"Attachment is {len(attachment.blob)} bytes; limit is {self.max_attachment_bytes}"
            )
        label, recipient_id = self._resolve(recipient)
        if label != BROADCAST and recipient_id is None:
            # Still logged (admins see it); nobody else can.
            log.info("Message from %s addressed to unknown callsign %s", sender_callsign, label)
        doc = await self.store.add(MESSAGE_LOGS, {
            "sender": sender_callsign,
            "user_id": sender_user_id,
            "recipient": label,
            "recipient_id": recipient_id,
            "content": content,
            "attachment": None if attachment is None else {
                "name": attachment.name,
                "mime_type": attachment.mime_type,
                "blob": attachment.blob,
            },
        }, timestamp_field="sent_at")
        return Message.from_doc(doc)

    def history(self, viewer: Viewer) -> List[Message]:
        return [
            Message.from_doc(d)
            for d in self.store.query(MESSAGE_LOGS, lambda d: visible_to(d, viewer), "sent_at")
        ]

    def subscribe(self, viewer: Viewer) -> MessageStream:
        """Visible history first, then every new visible message as it lands."""
        return MessageStream(
            self.store.watch_query(MESSAGE_LOGS, lambda d: visible_to(d, viewer), "sent_at")
        )

    async def purge(self) -> int:
        ids = [d["id"] for d in self.store.query(MESSAGE_LOGS)]
        for message_id in ids:
            await self.store.delete(MESSAGE_LOGS, message_id)
        return len(ids)
