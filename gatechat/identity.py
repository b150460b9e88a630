"""
identity.py — the Identity Store: users, the callsign index, and admin roles.

Callsigns are canonical (trimmed, upper-case) and unique. Uniqueness is
kept by a `callsigns` index (callsign -> user id) whose documents are
claimed with a transaction, so two users racing for one name can't both win.

Admin authority lives in `rolesAdmin`, keyed by user id. A display name
never grants anything.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import CallsignTaken, InvalidCallsign, NotFound
from .store import DELETE, DocumentStore, Subscription

log = logging.getLogger("gatechat.identity")

USERS = "users"
ADMIN_ROLES = "rolesAdmin"
CALLSIGNS = "callsigns"
BIOMETRICS = "biometrics"

BROADCAST = "ALL"
_CALLSIGN_RE = re.compile(r"^[A-Z0-9_.\-]{1,24}$")


def canonical_callsign(raw: str) -> str:
    """Trim + upper-case, then validate. Raises InvalidCallsign."""
    callsign = (raw or "").strip().upper()
    if not _CALLSIGN_RE.match(callsign):
        raise InvalidCallsign("Callsign must be 1-24 characters of A-Z, 0-9, '_', '-', '.'")
    if callsign == BROADCAST:
        raise InvalidCallsign(f"'{BROADCAST}' is reserved")
    return callsign


@dataclass
class User:
    id: str
    callsign: str
    is_admin: bool = False
    is_blocked: bool = False
    biometric_ref: Optional[str] = None
    registered_at: float = 0.0

    @classmethod
    def from_doc(cls, doc: dict) -> "User":
        return cls(
            id=doc["id"],
            callsign=doc["callsign"],
            is_admin=doc.get("is_admin", False),
            is_blocked=doc.get("is_blocked", False),
            biometric_ref=doc.get("biometric_ref"),
            registered_at=doc.get("registered_at", 0.0),
        )


class IdentityStore:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # -----
    # Reads
    # -----

    def get(self, user_id: str) -> Optional[User]:
        doc = self.store.get(USERS, user_id)
        return User.from_doc(doc) if doc else None

    def require(self, user_id: str) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFound(f"No user {user_id}")
        return user

    def owner_of(self, callsign: str) -> Optional[str]:
        """User id currently holding `callsign`, if any."""
        doc = self.store.get(CALLSIGNS, callsign.strip().upper())
        return doc["user_id"] if doc else None

    def find_by_callsign(self, callsign: str) -> Optional[User]:
        user_id = self.owner_of(callsign)
        return self.get(user_id) if user_id else None

    def list_users(self) -> List[User]:
        return [User.from_doc(d) for d in self.store.query(USERS, order_by="registered_at")]

    def is_admin(self, user_id: str) -> bool:
        return self.store.get(ADMIN_ROLES, user_id) is not None

    def watch(self, user_id: str) -> Subscription:
        return self.store.watch_document(USERS, user_id)

    # -------------
    # Callsign index
    # -------------

    async def _claim(self, callsign: str, user_id: str) -> None:
        def claim(current):
            if current and current["user_id"] != user_id:
                return None, False
            return {"user_id": user_id}, True
        if not await self.store.run_transaction(CALLSIGNS, callsign, claim):
            raise CallsignTaken(f"Callsign {callsign} is already in use")

    async def _release(self, callsign: str, user_id: str) -> None:
        await self.store.run_transaction(
            CALLSIGNS, callsign,
            lambda cur: (DELETE, None) if cur and cur["user_id"] == user_id else (None, None),
        )

    # ------
    # Writes
    # ------

    async def register(self, user_id: str, raw_callsign: str, is_admin: bool = False) -> User:
        """Create the user record, claiming the callsign first."""
        callsign = canonical_callsign(raw_callsign)
        await self._claim(callsign, user_id)
        doc = await self.store.set(USERS, user_id, {
            "callsign": callsign,
            "is_admin": is_admin,
            "is_blocked": False,
            "biometric_ref": None,
            "registered_at": self.store.server_timestamp(),
        })
        log.info("Registered %s as %s", user_id, callsign)
        return User.from_doc(doc)

    async def grant_admin(self, user_id: str) -> None:
        user = self.require(user_id)
        await self.store.set(ADMIN_ROLES, user_id, {
            "user_id": user_id,
            "callsign": user.callsign,
            "granted_at": self.store.server_timestamp(),
        })
        if not user.is_admin:
            await self.store.update(USERS, user_id, {"is_admin": True})

    async def rename(self, user_id: str, raw_callsign: str) -> User:
        """Move a user to a new callsign, keeping users + rolesAdmin in sync."""
        user = self.require(user_id)
        callsign = canonical_callsign(raw_callsign)
        if callsign == user.callsign:
            return user
        await self._claim(callsign, user_id)
        updated = await self.store.update(USERS, user_id, {"callsign": callsign})
        if updated is None:
            # Deleted while we were claiming.
            await self._release(callsign, user_id)
            raise NotFound(f"No user {user_id}")
        await self._release(user.callsign, user_id)
        await self.store.update(ADMIN_ROLES, user_id, {"callsign": callsign})
        log.info("Renamed %s: %s -> %s", user_id, user.callsign, callsign)
        return User.from_doc(updated)

    async def set_blocked(self, user_id: str, blocked: bool) -> User:
        doc = await self.store.update(USERS, user_id, {"is_blocked": blocked})
        if doc is None:
            raise NotFound(f"No user {user_id}")
        return User.from_doc(doc)

    async def store_biometric(self, user_id: str, blob: bytes) -> str:
        self.require(user_id)
        await self.store.set(BIOMETRICS, user_id, {
            "user_id": user_id,
            "blob": blob,
            "captured_at": self.store.server_timestamp(),
        })
        ref = f"{BIOMETRICS}/{user_id}"
        await self.store.update(USERS, user_id, {"biometric_ref": ref})
        return ref

    async def delete(self, user_id: str) -> bool:
        """Hard delete: the record, its callsign claim and its biometric blob."""
        user = self.get(user_id)
        if user is None:
            return False
        await self.store.delete(USERS, user_id)
        await self._release(user.callsign, user_id)
        await self.store.delete(BIOMETRICS, user_id)
        return True
