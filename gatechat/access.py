"""
access.py — the Access Control Registry: gateway phrases and invite keys.

Gateway comparison is trimmed and case-insensitive, admin phrase first.
Invite keys are single use; consumption is a compare-and-swap on
`is_used == False`, so only one of several racing callers succeeds.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .store import DocumentStore

log = logging.getLogger("gatechat.access")

GATEWAY = "gateway"
GATEWAY_DOC = "default"
ACCESS_KEYS = "accessKeys"

KEY_PREFIX = "KEY-"
KEY_ALPHABET = string.ascii_uppercase + string.digits
KEY_LENGTH = 6  # 36**6 ≈ 2**31


class GatewayVerdict(str, Enum):
    OPERATIVE = "OPERATIVE"
    ADMIN = "ADMIN"
    REJECTED = "REJECTED"


class PhraseKind(str, Enum):
    OPERATIVE = "operative"
    ADMIN = "admin"


def _normalize(phrase: Optional[str]) -> str:
    return (phrase or "").strip().lower()


@dataclass
class InviteKey:
    key: str
    is_used: bool
    created_at: float
    used_by: Optional[str] = None
    used_at: Optional[float] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "InviteKey":
        return cls(
            key=doc["key"],
            is_used=doc["is_used"],
            created_at=doc["created_at"],
            used_by=doc.get("used_by"),
            used_at=doc.get("used_at"),
        )


class AccessRegistry:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def ensure_gateway(self, operative_phrase: str, admin_phrase: Optional[str]) -> None:
        """Seed the gateway document on first start; never overwrite a live one."""
        if self.store.get(GATEWAY, GATEWAY_DOC) is not None:
            return
        await self.store.set(GATEWAY, GATEWAY_DOC, {
            "operative_phrase": _normalize(operative_phrase),
            "admin_phrase": _normalize(admin_phrase),
            "updated_at": self.store.server_timestamp(),
        })
        if not admin_phrase:
            log.warning("No admin phrase configured; the admin track is disabled")

    def check_gateway(self, phrase: str) -> GatewayVerdict:
        gateway = self.store.get(GATEWAY, GATEWAY_DOC) or {}
        attempt = _normalize(phrase)
        if not attempt:
            return GatewayVerdict.REJECTED
        admin = gateway.get("admin_phrase")
        if admin and attempt == admin:
            return GatewayVerdict.ADMIN
        operative = gateway.get("operative_phrase")
        if operative and attempt == operative:
            return GatewayVerdict.OPERATIVE
        return GatewayVerdict.REJECTED

    async def update_gateway(self, kind: PhraseKind, new_phrase: str) -> None:
        """Last write wins; no history is kept."""
        phrase = _normalize(new_phrase)
        if not phrase:
            raise ValueError("Gateway phrase must not be empty")
        await self.store.set(GATEWAY, GATEWAY_DOC, {
            f"{PhraseKind(kind).value}_phrase": phrase,
            "updated_at": self.store.server_timestamp(),
        }, merge=True)

    async def issue_invite_key(self) -> InviteKey:
        key = KEY_PREFIX + "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))
        doc = await self.store.set(ACCESS_KEYS, key, {
            "key": key,
            "is_used": False,
            "created_at": self.store.server_timestamp(),
            "used_by": None,
            "used_at": None,
        })
        return InviteKey.from_doc(doc)

    def get_invite(self, key: str) -> Optional[InviteKey]:
        doc = self.store.get(ACCESS_KEYS, (key or "").strip().upper())
        return InviteKey.from_doc(doc) if doc else None

    def is_invite_valid(self, key: Optional[str]) -> bool:
        invite = self.get_invite(key) if key else None
        return invite is not None and not invite.is_used

    async def consume_invite_key(self, key: str, user_id: str) -> bool:
        """Mark the key used by `user_id`. False on unknown or already-used keys."""
        def consume(current):
            if current is None or current["is_used"]:
                return None, False
            current.update({
                "is_used": True,
                "used_by": user_id,
                "used_at": self.store.server_timestamp(),
            })
            return current, True
        return await self.store.run_transaction(ACCESS_KEYS, (key or "").strip().upper(), consume)
