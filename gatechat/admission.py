"""
admission.py — the session admission state machine.

    AWAITING_GATEWAY -> AWAITING_IDENTITY -> AWAITING_APPROVAL
        -> AWAITING_BIOMETRIC (first login only) -> AWAITING_SESSION_CODE -> ACTIVE

Admin-track clients skip the approval queue and the session code:

    AWAITING_GATEWAY -> AWAITING_IDENTITY -> AWAITING_BIOMETRIC (first login only) -> ACTIVE

The module has two halves:
- Pure transition functions (`on_gateway`, `on_identity`, ...). Each takes the
  current AdmissionContext plus the facts it needs and returns a Step: the
  next context, the side effects to perform, or a rejection reason. They
  never touch the store.
- AdmissionFlow, the async driver. It gathers facts, calls the transition,
  performs the effects, and follows live subscriptions on the user record,
  the session request and the open session.

A rejected step leaves the state untouched and raises the matching
PortalError. A reset (block, delete, denial, expiry, logout) drops every
piece of client-held state and returns to AWAITING_GATEWAY.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from . import errors
from .access import GatewayVerdict
from .approvals import RequestStatus, SessionRequest, code_matches
from .identity import User, canonical_callsign

if TYPE_CHECKING:
    from .portal import Portal

log = logging.getLogger("gatechat.admission")


class AdmissionState(str, Enum):
    AWAITING_GATEWAY = "AWAITING_GATEWAY"
    AWAITING_IDENTITY = "AWAITING_IDENTITY"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    AWAITING_BIOMETRIC = "AWAITING_BIOMETRIC"
    AWAITING_SESSION_CODE = "AWAITING_SESSION_CODE"
    ACTIVE = "ACTIVE"


class Track(str, Enum):
    OPERATIVE = "OPERATIVE"
    ADMIN = "ADMIN"


class Reason(str, Enum):
    GATEWAY_MISMATCH = "GATEWAY_MISMATCH"
    IDENTITY_DENIED = "IDENTITY_DENIED"
    CALLSIGN_TAKEN = "CALLSIGN_TAKEN"
    INVALID_SESSION_CODE = "INVALID_SESSION_CODE"
    REQUEST_DENIED = "REQUEST_DENIED"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    CAPTURE_TOO_LARGE = "CAPTURE_TOO_LARGE"
    EMPTY_CAPTURE = "EMPTY_CAPTURE"
    OUT_OF_SEQUENCE = "OUT_OF_SEQUENCE"
    BLOCKED = "BLOCKED"
    SESSION_REVOKED = "SESSION_REVOKED"
    LOGGED_OUT = "LOGGED_OUT"


class Effect(str, Enum):
    CONSUME_INVITE = "CONSUME_INVITE"
    REGISTER_USER = "REGISTER_USER"
    GRANT_ADMIN = "GRANT_ADMIN"
    SUBMIT_REQUEST = "SUBMIT_REQUEST"
    REDEEM_REQUEST = "REDEEM_REQUEST"
    EXPIRE_REQUEST = "EXPIRE_REQUEST"
    STORE_BIOMETRIC = "STORE_BIOMETRIC"
    OPEN_SESSION = "OPEN_SESSION"
    REVOKE_SESSION = "REVOKE_SESSION"


S = AdmissionState

_REJECTIONS: Dict[Reason, Type[errors.PortalError]] = {
    Reason.GATEWAY_MISMATCH: errors.GatewayMismatch,
    Reason.IDENTITY_DENIED: errors.IdentityDenied,
    Reason.CALLSIGN_TAKEN: errors.CallsignTaken,
    Reason.INVALID_SESSION_CODE: errors.InvalidSessionCode,
    Reason.CAPTURE_TOO_LARGE: errors.CaptureTooLarge,
    Reason.EMPTY_CAPTURE: errors.EmptyCapture,
    Reason.OUT_OF_SEQUENCE: errors.OutOfSequence,
}


@dataclass(frozen=True)
class AdmissionContext:
    user_id: str
    state: AdmissionState = S.AWAITING_GATEWAY
    track: Optional[Track] = None
    callsign: Optional[str] = None
    invite_key: Optional[str] = None
    request_id: Optional[str] = None
    needs_biometric: bool = False
    skip_approval: bool = False
    session_id: Optional[str] = None
    reason: Optional[Reason] = None

    def reset(self, reason: Reason) -> "AdmissionContext":
        return AdmissionContext(self.user_id, reason=reason)


@dataclass(frozen=True)
class Step:
    context: AdmissionContext
    effects: Tuple[Effect, ...] = ()
    rejected: Optional[Reason] = None


@dataclass(frozen=True)
class IdentityFacts:
    callsign: str
    invite_key: Optional[str]
    existing: Optional[User]
    owner_id: Optional[str]
    holds_admin_role: bool
    invite_valid: bool
    allow_uninvited: bool = False
    invited_skip_approval: bool = False


def _reject(ctx: AdmissionContext, reason: Reason) -> Step:
    return Step(ctx, rejected=reason)


def _reset(ctx: AdmissionContext, reason: Reason, *effects: Effect) -> Step:
    if ctx.session_id and Effect.REVOKE_SESSION not in effects:
        effects += (Effect.REVOKE_SESSION,)
    return Step(ctx.reset(reason), effects)


# --------------------
# Transition functions
# --------------------

def on_gateway(ctx: AdmissionContext, verdict: GatewayVerdict) -> Step:
    if ctx.state != S.AWAITING_GATEWAY:
        return _reject(ctx, Reason.OUT_OF_SEQUENCE)
    if verdict == GatewayVerdict.REJECTED:
        return _reject(ctx, Reason.GATEWAY_MISMATCH)
    track = Track.ADMIN if verdict == GatewayVerdict.ADMIN else Track.OPERATIVE
    return Step(replace(ctx, state=S.AWAITING_IDENTITY, track=track, reason=None))


def on_identity(ctx: AdmissionContext, facts: IdentityFacts) -> Step:
    if ctx.state != S.AWAITING_IDENTITY:
        return _reject(ctx, Reason.OUT_OF_SEQUENCE)
    original = ctx
    existing = facts.existing
    if existing is not None and existing.is_blocked:
        return _reset(ctx, Reason.BLOCKED)
    if existing is None and facts.owner_id not in (None, ctx.user_id):
        return _reject(ctx, Reason.CALLSIGN_TAKEN)
    # A returning user always gets their stored callsign back.
    callsign = existing.callsign if existing is not None else facts.callsign
    ctx = replace(ctx, callsign=callsign, reason=None)

    if ctx.track == Track.ADMIN or facts.holds_admin_role:
        effects: Tuple[Effect, ...] = ()
        if existing is None:
            effects += (Effect.REGISTER_USER,)
        if not facts.holds_admin_role:
            effects += (Effect.GRANT_ADMIN,)
        needs_biometric = existing is None or existing.biometric_ref is None
        ctx = replace(ctx, track=Track.ADMIN, needs_biometric=needs_biometric)
        if needs_biometric:
            return Step(replace(ctx, state=S.AWAITING_BIOMETRIC), effects)
        return Step(replace(ctx, state=S.ACTIVE), effects + (Effect.OPEN_SESSION,))

    if existing is not None:
        return Step(
            replace(ctx, state=S.AWAITING_APPROVAL, needs_biometric=existing.biometric_ref is None),
            (Effect.SUBMIT_REQUEST,),
        )

    ctx = replace(ctx, needs_biometric=True)
    if facts.invite_valid:
        ctx = replace(ctx, invite_key=facts.invite_key)
        # Claim the callsign before spending the invite; a lost race keeps the key.
        effects = (Effect.REGISTER_USER, Effect.CONSUME_INVITE)
        if facts.invited_skip_approval:
            return Step(replace(ctx, state=S.AWAITING_BIOMETRIC, skip_approval=True), effects)
        return Step(replace(ctx, state=S.AWAITING_APPROVAL), effects + (Effect.SUBMIT_REQUEST,))
    if facts.allow_uninvited:
        return Step(replace(ctx, state=S.AWAITING_APPROVAL), (Effect.REGISTER_USER, Effect.SUBMIT_REQUEST))
    return _reject(original, Reason.IDENTITY_DENIED)


def on_request_update(ctx: AdmissionContext, request: Optional[SessionRequest], stale: bool) -> Step:
    """Apply a change to the client's own session request while it waits."""
    if ctx.state != S.AWAITING_APPROVAL:
        return Step(ctx)
    if request is None or request.status == RequestStatus.DENIED:
        return _reset(ctx, Reason.REQUEST_DENIED)
    if request.status == RequestStatus.EXPIRED:
        return _reset(ctx, Reason.REQUEST_EXPIRED)
    if stale:
        return _reset(ctx, Reason.REQUEST_EXPIRED, Effect.EXPIRE_REQUEST)
    if request.status == RequestStatus.APPROVED:
        nxt = S.AWAITING_BIOMETRIC if ctx.needs_biometric else S.AWAITING_SESSION_CODE
        return Step(replace(ctx, state=nxt, reason=None))
    return Step(ctx)


def on_biometric(ctx: AdmissionContext, size: int, limit: int) -> Step:
    if ctx.state != S.AWAITING_BIOMETRIC:
        return _reject(ctx, Reason.OUT_OF_SEQUENCE)
    if size == 0:
        return _reject(ctx, Reason.EMPTY_CAPTURE)
    if size > limit:
        return _reject(ctx, Reason.CAPTURE_TOO_LARGE)
    ctx = replace(ctx, needs_biometric=False, reason=None)
    if ctx.track == Track.ADMIN or ctx.skip_approval:
        return Step(replace(ctx, state=S.ACTIVE), (Effect.STORE_BIOMETRIC, Effect.OPEN_SESSION))
    return Step(replace(ctx, state=S.AWAITING_SESSION_CODE), (Effect.STORE_BIOMETRIC,))


def on_session_code(ctx: AdmissionContext, submitted: str, request: Optional[SessionRequest], stale: bool) -> Step:
    if ctx.state != S.AWAITING_SESSION_CODE:
        return _reject(ctx, Reason.OUT_OF_SEQUENCE)
    if request is None or request.status == RequestStatus.DENIED:
        return _reset(ctx, Reason.REQUEST_DENIED)
    if request.status == RequestStatus.EXPIRED:
        return _reset(ctx, Reason.REQUEST_EXPIRED)
    if stale:
        return _reset(ctx, Reason.REQUEST_EXPIRED, Effect.EXPIRE_REQUEST)
    if not code_matches(request, submitted):
        return _reject(ctx, Reason.INVALID_SESSION_CODE)
    return Step(replace(ctx, state=S.ACTIVE, reason=None), (Effect.REDEEM_REQUEST, Effect.OPEN_SESSION))


def on_user_update(ctx: AdmissionContext, user: Optional[User]) -> Step:
    """The user's own record changed (or was re-read)."""
    if ctx.state == S.AWAITING_GATEWAY:
        return Step(ctx)
    if user is None:
        # Before registration there is simply no record yet.
        if ctx.callsign is None or ctx.state == S.AWAITING_IDENTITY:
            return Step(ctx)
        return _reset(ctx, Reason.SESSION_REVOKED)
    if user.is_blocked:
        return _reset(ctx, Reason.BLOCKED)
    if ctx.callsign is not None and user.callsign != ctx.callsign:
        return Step(replace(ctx, callsign=user.callsign))
    return Step(ctx)


def on_session_revoked(ctx: AdmissionContext) -> Step:
    if ctx.state != S.ACTIVE:
        return Step(ctx)
    return Step(ctx.reset(Reason.SESSION_REVOKED))


def on_logout(ctx: AdmissionContext) -> Step:
    return _reset(ctx, Reason.LOGGED_OUT)


# ----------
# The driver
# ----------

Listener = Callable[[AdmissionContext], Awaitable[None]]


class AdmissionFlow:
    """
    One connecting client's walk through admission.

    All transitions, whether caused by the client's own input or by a live
    subscription firing, are serialized on one lock, so effects of one step
    never interleave with another.
    """

    def __init__(self, portal: "Portal", user_id: str, listener: Optional[Listener] = None) -> None:
        self.portal = portal
        self.context = AdmissionContext(user_id)
        self.session_token: Optional[str] = None
        self._listener = listener
        self._lock = asyncio.Lock()
        self._capture: Optional[bytes] = None
        self._tasks: Set[asyncio.Task] = set()
        self._subs: set = set()
        self._session_task: Optional[asyncio.Task] = None
        self._decision_sub = None

    @property
    def state(self) -> AdmissionState:
        return self.context.state

    @property
    def user_id(self) -> str:
        return self.context.user_id

    def start(self) -> "AdmissionFlow":
        """Begin following the user's own record (block/delete/rename)."""
        sub = self.portal.identity.watch(self.user_id)
        self._subs.add(sub)
        self._spawn(self._follow_user(sub))
        return self

    async def close(self) -> None:
        """Release every subscription. An open request is kept for resuming."""
        for sub in list(self._subs):
            sub.close()
        self._subs.clear()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------
    # Client input
    # ------------

    async def submit_gateway(self, phrase: str) -> AdmissionContext:
        async with self._lock:
            verdict = self.portal.access.check_gateway(phrase)
            return await self._advance(on_gateway(self.context, verdict))

    async def submit_identity(self, callsign: str, invite_key: Optional[str] = None) -> AdmissionContext:
        async with self._lock:
            p = self.portal
            existing = p.identity.get(self.user_id)
            requested = (callsign or "").strip().upper()
            if self.state == S.AWAITING_IDENTITY and existing is None:
                requested = canonical_callsign(callsign)
            invite = (invite_key or "").strip().upper() or None
            facts = IdentityFacts(
                callsign=requested,
                invite_key=invite,
                existing=existing,
                owner_id=p.identity.owner_of(requested) if requested else None,
                holds_admin_role=p.identity.is_admin(self.user_id),
                invite_valid=p.access.is_invite_valid(invite),
                allow_uninvited=p.config.allow_uninvited_queue,
                invited_skip_approval=p.config.invited_skip_approval,
            )
            await self._advance(on_identity(self.context, facts))
            if self.state == S.AWAITING_APPROVAL:
                # A request approved while the client was away is picked up here.
                request = self._request()
                stale = request is not None and self.portal.approvals.is_stale(request)
                await self._advance(on_request_update(self.context, request, stale))
            return self.context

    async def wait_for_decision(self, timeout: Optional[float] = None) -> AdmissionContext:
        """
        Wait on the live request document until it is decided.
        Returns the (possibly unchanged) context on timeout or close().
        """
        if self.state != S.AWAITING_APPROVAL:
            return self.context
        sub = self.portal.approvals.watch(self.context.request_id)
        self._subs.add(sub)
        self._decision_sub = sub

        async def follow() -> None:
            async for _ in sub:
                if await self._on_request() != S.AWAITING_APPROVAL:
                    return

        try:
            await asyncio.wait_for(follow(), timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            sub.close()
            self._subs.discard(sub)
            self._decision_sub = None
        return self.context

    async def submit_biometric(self, blob: bytes) -> AdmissionContext:
        async with self._lock:
            self._capture = blob or b""
            try:
                step = on_biometric(self.context, len(self._capture), self.portal.config.max_attachment_bytes)
                return await self._advance(step)
            finally:
                self._capture = None

    async def submit_session_code(self, code: str) -> AdmissionContext:
        async with self._lock:
            request = self._request()
            stale = request is not None and self.portal.approvals.is_stale(request)
            return await self._advance(on_session_code(self.context, code, request, stale))

    async def refresh(self) -> AdmissionContext:
        """Re-read the user (and pending request); a blocked user is reset here."""
        async with self._lock:
            await self._advance(on_user_update(self.context, self.portal.identity.get(self.user_id)))
            if self.state == S.AWAITING_APPROVAL:
                request = self._request()
                stale = request is not None and self.portal.approvals.is_stale(request)
                await self._advance(on_request_update(self.context, request, stale))
            return self.context

    async def logout(self) -> AdmissionContext:
        async with self._lock:
            return await self._advance(on_logout(self.context))

    # ---------
    # Internals
    # ---------

    def _request(self) -> Optional[SessionRequest]:
        rid = self.context.request_id
        return self.portal.approvals.get(rid) if rid else None

    async def _advance(self, step: Step, notify: bool = False) -> AdmissionContext:
        before = self.context
        if step.rejected is not None:
            self.context = replace(before, reason=step.rejected)
            raise _REJECTIONS[step.rejected]()
        ctx = step.context
        for effect in step.effects:
            ctx = await self._perform(effect, before, ctx)
        self.context = ctx
        if ctx.state != S.AWAITING_APPROVAL and self._decision_sub is not None:
            # Reset by something else (block, delete); stop waiting on the request.
            self._decision_sub.close()
        if ctx.state != before.state:
            log.info("%s: %s -> %s%s", self.user_id, before.state.value, ctx.state.value,
                     f" ({ctx.reason.value})" if ctx.reason else "")
        if notify and ctx != before and self._listener is not None:
            await self._listener(ctx)
        return ctx

    async def _perform(self, effect: Effect, before: AdmissionContext, ctx: AdmissionContext) -> AdmissionContext:
        p = self.portal
        uid = self.user_id
        if effect == Effect.CONSUME_INVITE:
            if not await p.access.consume_invite_key(ctx.invite_key, uid):
                # Registered a moment ago under this key; undo it.
                await p.identity.delete(uid)
                raise errors.IdentityDenied("Invite key is no longer valid")
        elif effect == Effect.REGISTER_USER:
            await p.identity.register(uid, ctx.callsign, is_admin=ctx.track == Track.ADMIN)
        elif effect == Effect.GRANT_ADMIN:
            await p.identity.grant_admin(uid)
        elif effect == Effect.SUBMIT_REQUEST:
            request = await p.approvals.submit(uid, ctx.callsign)
            ctx = replace(ctx, request_id=request.id)
        elif effect == Effect.REDEEM_REQUEST:
            if not await p.approvals.redeem(ctx.request_id):
                raise errors.InvalidSessionCode("Session code was already used")
        elif effect == Effect.EXPIRE_REQUEST:
            await p.approvals.expire(before.request_id)
        elif effect == Effect.STORE_BIOMETRIC:
            await p.identity.store_biometric(uid, self._capture)
        elif effect == Effect.OPEN_SESSION:
            token, grant = await p.sessions.open(uid, ctx.callsign, ctx.track == Track.ADMIN)
            self.session_token = token
            ctx = replace(ctx, session_id=grant.session_id)
            self._session_task = self._spawn(self._follow_session(grant.session_id))
        elif effect == Effect.REVOKE_SESSION:
            self.session_token = None
            if self._session_task is not None and self._session_task is not asyncio.current_task():
                self._session_task.cancel()
            self._session_task = None
            await p.sessions.revoke(before.session_id)
        return ctx

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _on_request(self) -> AdmissionState:
        async with self._lock:
            # Same as the user follower: act on the live document, not the queued copy.
            request = self._request()
            stale = request is not None and self.portal.approvals.is_stale(request)
            await self._advance(on_request_update(self.context, request, stale), notify=True)
            return self.state

    async def _follow_user(self, sub) -> None:
        # Snapshots only signal a change. By the time the lock is free the
        # queued one may be stale (e.g. None from before registration).
        async for _ in sub:
            async with self._lock:
                user = self.portal.identity.get(self.user_id)
                await self._advance(on_user_update(self.context, user), notify=True)

    async def _follow_session(self, session_id: str) -> None:
        sub = self.portal.sessions.watch(session_id)
        self._subs.add(sub)
        try:
            async for snapshot in sub:
                if snapshot is None:
                    async with self._lock:
                        if self.context.session_id == session_id:
                            self.session_token = None
                            await self._advance(on_session_revoked(self.context), notify=True)
                    return
        finally:
            sub.close()
            self._subs.discard(sub)
