"""
approvals.py — the Approval Queue for session requests and callsign changes.

Session requests only move forward:

    pending -> approved | denied | expired
    approved -> redeemed           (the session code was used)
    approved -> expired            (code not redeemed within the timeout)

Every status change is a guarded transaction on the request document, so
two admins approving at once produce exactly one session code. A user has
at most one open request (pending, or approved and not yet redeemed);
submitting again hands back that one, which is how a returning client
resumes, even when the approval landed while it was away.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from weakref import WeakValueDictionary

from .errors import CallsignTaken
from .identity import IdentityStore, User, canonical_callsign
from .store import DocumentStore, Subscription

log = logging.getLogger("gatechat.approvals")

SESSION_REQUESTS = "sessionRequests"
CALLSIGN_REQUESTS = "callsignRequests"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    REDEEMED = "redeemed"


@dataclass
class SessionRequest:
    id: str
    user_id: str
    callsign: str
    status: RequestStatus
    created_at: float
    session_code: Optional[str] = None
    decided_at: Optional[float] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "SessionRequest":
        return cls(
            id=doc["id"],
            user_id=doc["user_id"],
            callsign=doc["callsign"],
            status=RequestStatus(doc["status"]),
            created_at=doc["created_at"],
            session_code=doc.get("session_code"),
            decided_at=doc.get("decided_at"),
        )


@dataclass
class IdentityChangeRequest:
    id: str
    user_id: str
    current_callsign: str
    requested_callsign: str
    created_at: float
    status: RequestStatus = RequestStatus.PENDING

    @classmethod
    def from_doc(cls, doc: dict) -> "IdentityChangeRequest":
        return cls(
            id=doc["id"],
            user_id=doc["user_id"],
            current_callsign=doc["current_callsign"],
            requested_callsign=doc["requested_callsign"],
            created_at=doc["created_at"],
        )


def new_session_code() -> str:
    """Four digits, 1000-9999."""
    return str(1000 + secrets.randbelow(9000))


def code_matches(request: SessionRequest, submitted: str) -> bool:
    """Only an approved request with an assigned code can be redeemed."""
    if request.status != RequestStatus.APPROVED or not request.session_code:
        return False
    return secrets.compare_digest((submitted or "").strip().encode(), request.session_code.encode())


class ApprovalQueue:
    def __init__(self, store: DocumentStore, identity: IdentityStore, timeout: float) -> None:
        self.store = store
        self.identity = identity
        self.timeout = timeout
        self._user_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    # -----
    # Reads
    # -----

    def get(self, request_id: str) -> Optional[SessionRequest]:
        doc = self.store.get(SESSION_REQUESTS, request_id)
        return SessionRequest.from_doc(doc) if doc else None

    def pending(self) -> List[SessionRequest]:
        return [
            SessionRequest.from_doc(d)
            for d in self.store.query(SESSION_REQUESTS, lambda d: d["status"] == RequestStatus.PENDING, "created_at")
        ]

    def open_for(self, user_id: str) -> Optional[SessionRequest]:
        """The user's request still in play: pending, or approved with the code unused."""
        open_states = (RequestStatus.PENDING, RequestStatus.APPROVED)
        docs = self.store.query(
            SESSION_REQUESTS,
            lambda d: d["user_id"] == user_id and d["status"] in open_states,
            "created_at",
        )
        return SessionRequest.from_doc(docs[-1]) if docs else None

    def watch(self, request_id: str) -> Subscription:
        return self.store.watch_document(SESSION_REQUESTS, request_id)

    def is_stale(self, request: SessionRequest) -> bool:
        """Pending too long, or approved but the code not redeemed in time."""
        now = self.store.now()
        if request.status == RequestStatus.PENDING:
            return now - request.created_at > self.timeout
        if request.status == RequestStatus.APPROVED:
            return now - (request.decided_at or request.created_at) > self.timeout
        return False

    # ----------------
    # Session requests
    # ----------------

    async def submit(self, user_id: str, callsign: str) -> SessionRequest:
        async with self._user_lock(user_id):
            existing = self.open_for(user_id)
            if existing is not None and not self.is_stale(existing):
                return existing
            if existing is not None:
                await self.expire(existing.id)
            doc = await self.store.add(SESSION_REQUESTS, {
                "user_id": user_id,
                "callsign": callsign,
                "status": RequestStatus.PENDING.value,
                "session_code": None,
                "created_at": self.store.server_timestamp(),
                "decided_at": None,
            })
        log.info("Session request %s queued for %s", doc["id"], callsign)
        return SessionRequest.from_doc(doc)

    async def approve(self, request_id: str) -> Optional[str]:
        """Assign a session code. None if the request is gone, decided, or stale."""
        code = new_session_code()

        def decide(current):
            if current is None or current["status"] != RequestStatus.PENDING:
                return None, None
            ts = self.store.server_timestamp()
            if self.is_stale(SessionRequest.from_doc(current)):
                current.update(status=RequestStatus.EXPIRED.value, decided_at=ts)
                return current, None
            current.update(status=RequestStatus.APPROVED.value, session_code=code, decided_at=ts)
            return current, code

        return await self.store.run_transaction(SESSION_REQUESTS, request_id, decide)

    async def deny(self, request_id: str) -> bool:
        return await self._close(request_id, RequestStatus.DENIED, (RequestStatus.PENDING,))

    async def redeem(self, request_id: str) -> bool:
        """Spend an approved code. False if it was already used or is no longer approved."""
        return await self._close(request_id, RequestStatus.REDEEMED, (RequestStatus.APPROVED,))

    async def expire(self, request_id: str) -> bool:
        return await self._close(
            request_id, RequestStatus.EXPIRED, (RequestStatus.PENDING, RequestStatus.APPROVED)
        )

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _close(self, request_id: str, status: RequestStatus, from_states) -> bool:
        def close(current):
            if current is None or RequestStatus(current["status"]) not in from_states:
                return None, False
            current.update(status=status.value, decided_at=self.store.server_timestamp())
            return current, True
        return await self.store.run_transaction(SESSION_REQUESTS, request_id, close)

    async def expire_stale(self) -> List[str]:
        stale = [
            SessionRequest.from_doc(d).id
            for d in self.store.query(SESSION_REQUESTS)
            if self.is_stale(SessionRequest.from_doc(d))
        ]
        expired = [rid for rid in stale if await self.expire(rid)]
        if expired:
            log.info("Expired %d stale session request(s)", len(expired))
        return expired

    # -----------------------
    # Identity change requests
    # -----------------------

    def get_identity_change(self, request_id: str) -> Optional[IdentityChangeRequest]:
        doc = self.store.get(CALLSIGN_REQUESTS, request_id)
        return IdentityChangeRequest.from_doc(doc) if doc else None

    def pending_identity_changes(self) -> List[IdentityChangeRequest]:
        return [IdentityChangeRequest.from_doc(d) for d in self.store.query(CALLSIGN_REQUESTS, order_by="created_at")]

    async def submit_identity_change(self, user_id: str, requested: str) -> IdentityChangeRequest:
        """Queue a rename. A newer request from the same user replaces the older one."""
        user = self.identity.require(user_id)
        callsign = canonical_callsign(requested)
        owner = self.identity.owner_of(callsign)
        if owner is not None and owner != user_id:
            raise CallsignTaken(f"Callsign {callsign} is already in use")
        async with self._user_lock(user_id):
            for old in self.store.query(CALLSIGN_REQUESTS, lambda d: d["user_id"] == user_id):
                await self.store.delete(CALLSIGN_REQUESTS, old["id"])
            doc = await self.store.add(CALLSIGN_REQUESTS, {
                "user_id": user_id,
                "current_callsign": user.callsign,
                "requested_callsign": callsign,
                "status": RequestStatus.PENDING.value,
                "created_at": self.store.server_timestamp(),
            })
        return IdentityChangeRequest.from_doc(doc)

    async def approve_identity_change(self, request_id: str) -> Optional[User]:
        """Rename the user, then drop the request. None if the request is gone."""
        request = self.get_identity_change(request_id)
        if request is None:
            return None
        user = await self.identity.rename(request.user_id, request.requested_callsign)
        await self.store.delete(CALLSIGN_REQUESTS, request_id)
        return user

    async def deny_identity_change(self, request_id: str) -> bool:
        return await self.store.delete(CALLSIGN_REQUESTS, request_id)

    # -------
    # Cascade
    # -------

    async def purge_user(self, user_id: str) -> int:
        """Remove a deleted user's open session requests and rename requests."""
        removed = 0
        open_states = (RequestStatus.PENDING.value, RequestStatus.APPROVED.value)
        for doc in self.store.query(SESSION_REQUESTS, lambda d: d["user_id"] == user_id and d["status"] in open_states):
            removed += int(await self.store.delete(SESSION_REQUESTS, doc["id"]))
        for doc in self.store.query(CALLSIGN_REQUESTS, lambda d: d["user_id"] == user_id):
            removed += int(await self.store.delete(CALLSIGN_REQUESTS, doc["id"]))
        return removed
