import asyncio

import pytest

from gatechat.access import GatewayVerdict
from gatechat.admission import (
    AdmissionContext, AdmissionState as S, Effect, IdentityFacts, Reason, Track,
    on_biometric, on_gateway, on_identity, on_logout, on_session_code,
)
from gatechat.approvals import RequestStatus, SessionRequest
from gatechat.errors import (
    Blocked, CallsignTaken, CaptureTooLarge, EmptyCapture, GatewayMismatch,
    IdentityDenied, InvalidSessionCode, OutOfSequence, SessionRevoked,
)
from gatechat.identity import User

OPERATIVE_PHRASE = "raven.oracle"
ADMIN_PHRASE = "overseer.protocol"


def _facts(**overrides):
    facts = dict(
        callsign="FALCON", invite_key=None, existing=None, owner_id=None,
        holds_admin_role=False, invite_valid=False,
    )
    facts.update(overrides)
    return IdentityFacts(**facts)


def _at(state, **fields):
    return AdmissionContext("u1", state=state, **fields)


# ----------------
# Pure transitions
# ----------------

def test_gateway_picks_the_track():
    step = on_gateway(_at(S.AWAITING_GATEWAY), GatewayVerdict.OPERATIVE)
    assert step.context.state == S.AWAITING_IDENTITY and step.context.track == Track.OPERATIVE
    step = on_gateway(_at(S.AWAITING_GATEWAY), GatewayVerdict.ADMIN)
    assert step.context.track == Track.ADMIN
    step = on_gateway(_at(S.AWAITING_GATEWAY), GatewayVerdict.REJECTED)
    assert step.rejected == Reason.GATEWAY_MISMATCH
    assert on_gateway(_at(S.ACTIVE), GatewayVerdict.OPERATIVE).rejected == Reason.OUT_OF_SEQUENCE


def test_new_operative_needs_a_valid_invite():
    ctx = _at(S.AWAITING_IDENTITY, track=Track.OPERATIVE)
    denied = on_identity(ctx, _facts())
    assert denied.rejected == Reason.IDENTITY_DENIED
    assert denied.context == ctx

    step = on_identity(ctx, _facts(invite_key="KEY-ABC123", invite_valid=True))
    assert step.context.state == S.AWAITING_APPROVAL
    assert step.effects == (Effect.REGISTER_USER, Effect.CONSUME_INVITE, Effect.SUBMIT_REQUEST)
    assert step.context.needs_biometric


def test_uninvited_queue_and_invited_skip_are_opt_in():
    ctx = _at(S.AWAITING_IDENTITY, track=Track.OPERATIVE)
    step = on_identity(ctx, _facts(allow_uninvited=True))
    assert step.effects == (Effect.REGISTER_USER, Effect.SUBMIT_REQUEST)

    step = on_identity(ctx, _facts(invite_key="KEY-ABC123", invite_valid=True, invited_skip_approval=True))
    assert step.context.state == S.AWAITING_BIOMETRIC
    assert step.context.skip_approval
    assert Effect.SUBMIT_REQUEST not in step.effects


def test_returning_operative_keeps_stored_callsign_and_queues():
    existing = User("u1", "FALCON", biometric_ref="biometrics/u1")
    step = on_identity(_at(S.AWAITING_IDENTITY, track=Track.OPERATIVE), _facts(callsign="WHATEVER", existing=existing))
    assert step.context.callsign == "FALCON"
    assert step.context.state == S.AWAITING_APPROVAL
    assert not step.context.needs_biometric
    assert step.effects == (Effect.SUBMIT_REQUEST,)


def test_blocked_or_taken_identities():
    ctx = _at(S.AWAITING_IDENTITY, track=Track.OPERATIVE)
    blocked = User("u1", "FALCON", is_blocked=True)
    step = on_identity(ctx, _facts(existing=blocked))
    assert step.context.state == S.AWAITING_GATEWAY and step.context.reason == Reason.BLOCKED
    step = on_identity(ctx, _facts(owner_id="u2", invite_valid=True))
    assert step.rejected == Reason.CALLSIGN_TAKEN


def test_admin_track_skips_queue_and_code():
    ctx = _at(S.AWAITING_IDENTITY, track=Track.ADMIN)
    first = on_identity(ctx, _facts(callsign="OVERSEER"))
    assert first.context.state == S.AWAITING_BIOMETRIC
    assert first.effects == (Effect.REGISTER_USER, Effect.GRANT_ADMIN)

    existing = User("u1", "OVERSEER", is_admin=True, biometric_ref="biometrics/u1")
    again = on_identity(ctx, _facts(existing=existing, holds_admin_role=True))
    assert again.context.state == S.ACTIVE
    assert again.effects == (Effect.OPEN_SESSION,)

    done = on_biometric(first.context, 10, 100)
    assert done.context.state == S.ACTIVE
    assert done.effects == (Effect.STORE_BIOMETRIC, Effect.OPEN_SESSION)


def test_biometric_capture_bounds():
    ctx = _at(S.AWAITING_BIOMETRIC, track=Track.OPERATIVE, needs_biometric=True)
    assert on_biometric(ctx, 0, 100).rejected == Reason.EMPTY_CAPTURE
    assert on_biometric(ctx, 101, 100).rejected == Reason.CAPTURE_TOO_LARGE
    step = on_biometric(ctx, 100, 100)
    assert step.context.state == S.AWAITING_SESSION_CODE
    assert not step.context.needs_biometric


def test_session_code_checks():
    ctx = _at(S.AWAITING_SESSION_CODE, track=Track.OPERATIVE, request_id="r1")
    approved = SessionRequest("r1", "u1", "FALCON", RequestStatus.APPROVED, 0.0, session_code="4321")
    assert on_session_code(ctx, "1234", approved, False).rejected == Reason.INVALID_SESSION_CODE
    redeemed = on_session_code(ctx, " 4321 ", approved, False)
    assert redeemed.context.state == S.ACTIVE
    assert redeemed.effects == (Effect.REDEEM_REQUEST, Effect.OPEN_SESSION)
    expired = on_session_code(ctx, "4321", approved, True)
    assert expired.context.reason == Reason.REQUEST_EXPIRED
    assert Effect.EXPIRE_REQUEST in expired.effects


def test_reset_revokes_an_open_session():
    step = on_logout(_at(S.ACTIVE, session_id="s1", callsign="FALCON"))
    assert step.context == AdmissionContext("u1", reason=Reason.LOGGED_OUT)
    assert step.effects == (Effect.REVOKE_SESSION,)


# ------------------
# Driven admissions
# ------------------

def test_operative_walkthrough(make_portal):
    async def scenario():
        portal = await make_portal()
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")

        with pytest.raises(GatewayMismatch):
            await flow.submit_gateway("wrong")
        assert flow.state == S.AWAITING_GATEWAY
        with pytest.raises(OutOfSequence):
            await flow.submit_session_code("1234")

        await flow.submit_gateway("RAVEN.ORACLE ")
        await flow.submit_identity(" falcon ", invite.key)
        assert flow.state == S.AWAITING_APPROVAL
        assert flow.context.callsign == "FALCON"
        assert not portal.access.is_invite_valid(invite.key)

        waiter = asyncio.create_task(flow.wait_for_decision(timeout=2))
        await asyncio.sleep(0)
        code = await portal.approvals.approve(flow.context.request_id)
        await waiter
        assert flow.state == S.AWAITING_BIOMETRIC

        with pytest.raises(EmptyCapture):
            await flow.submit_biometric(b"")
        with pytest.raises(CaptureTooLarge):
            await flow.submit_biometric(b"\0" * (1024 * 1024 + 1))
        await flow.submit_biometric(b"face")
        assert flow.state == S.AWAITING_SESSION_CODE
        assert portal.identity.get("u1").biometric_ref == "biometrics/u1"

        wrong = "0000" if code != "0000" else "1111"
        with pytest.raises(InvalidSessionCode):
            await flow.submit_session_code(wrong)
        assert flow.state == S.AWAITING_SESSION_CODE
        assert flow.context.reason == Reason.INVALID_SESSION_CODE

        await flow.submit_session_code(code)
        assert flow.state == S.ACTIVE
        msg = await portal.send(flow.session_token, "ALL", "hello")
        assert msg.sender == "FALCON"
        await flow.close()
    asyncio.run(scenario())


def test_unknown_user_without_invite_is_denied(make_portal):
    async def scenario():
        portal = await make_portal()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        with pytest.raises(IdentityDenied):
            await flow.submit_identity("FALCON")
        assert flow.state == S.AWAITING_IDENTITY
        assert portal.identity.get("u1") is None
        await flow.close()
    asyncio.run(scenario())


def test_callsign_held_by_someone_else(make_portal, admit_operative):
    async def scenario():
        portal = await make_portal()
        other = await admit_operative(portal, "u1", "FALCON")
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u2")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        with pytest.raises(CallsignTaken):
            await flow.submit_identity("falcon", invite.key)
        assert portal.access.is_invite_valid(invite.key)
        await flow.close()
        await other.close()
    asyncio.run(scenario())


def test_denial_resets_the_waiting_client(make_portal):
    async def scenario():
        portal = await make_portal()
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        waiter = asyncio.create_task(flow.wait_for_decision(timeout=2))
        await asyncio.sleep(0)
        await portal.approvals.deny(flow.context.request_id)
        ctx = await waiter
        assert ctx.state == S.AWAITING_GATEWAY
        assert ctx.reason == Reason.REQUEST_DENIED
        await flow.close()
    asyncio.run(scenario())


def test_unredeemed_code_expires(make_portal, clock):
    async def scenario():
        portal = await make_portal()
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        code = await portal.approvals.approve(flow.context.request_id)
        request_id = flow.context.request_id
        await flow.refresh()
        await flow.submit_biometric(b"face")
        clock.advance(portal.config.approval_timeout + 1)
        ctx = await flow.submit_session_code(code)
        assert ctx.state == S.AWAITING_GATEWAY
        assert ctx.reason == Reason.REQUEST_EXPIRED
        assert portal.approvals.get(request_id).status == RequestStatus.EXPIRED
        await flow.close()
    asyncio.run(scenario())


def test_returning_operative_skips_biometric(make_portal, admit_operative):
    async def scenario():
        portal = await make_portal()
        first = await admit_operative(portal, "u1", "FALCON")
        await first.logout()
        assert first.session_token is None
        await first.close()

        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("IGNORED")
        assert flow.context.callsign == "FALCON"
        code = await portal.approvals.approve(flow.context.request_id)
        await flow.refresh()
        assert flow.state == S.AWAITING_SESSION_CODE
        await flow.submit_session_code(code)
        assert flow.state == S.ACTIVE
        await flow.close()
    asyncio.run(scenario())


def test_invited_first_timers_can_skip_approval(make_portal):
    async def scenario():
        portal = await make_portal(invited_skip_approval=True)
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        assert flow.state == S.AWAITING_BIOMETRIC
        await flow.submit_biometric(b"face")
        assert flow.state == S.ACTIVE
        assert portal.approvals.pending() == []
        await flow.close()
    asyncio.run(scenario())


def test_admin_track(make_portal, admit_admin):
    async def scenario():
        portal = await make_portal()
        flow = await admit_admin(portal)
        assert flow.state == S.ACTIVE
        assert portal.identity.is_admin("admin-1")
        await flow.logout()
        await flow.close()

        again = portal.open_flow("admin-1")
        await again.submit_gateway(ADMIN_PHRASE.upper())
        await again.submit_identity("OVERSEER")
        assert again.state == S.ACTIVE
        assert portal.approvals.pending() == []
        await again.close()
    asyncio.run(scenario())


def test_block_resets_an_active_client(make_portal, admit_admin, admit_operative, until):
    async def scenario():
        portal = await make_portal()
        admin = await admit_admin(portal)
        flow = await admit_operative(portal, "u1", "FALCON")
        token = flow.session_token

        await portal.moderation.block("admin-1", "u1")
        await until(lambda: flow.state == S.AWAITING_GATEWAY)
        assert flow.context.reason in (Reason.BLOCKED, Reason.SESSION_REVOKED)
        assert flow.session_token is None
        with pytest.raises((Blocked, SessionRevoked)):
            await portal.send(token, "ALL", "still here?")

        await flow.submit_gateway(OPERATIVE_PHRASE)
        ctx = await flow.submit_identity("FALCON")
        assert ctx.state == S.AWAITING_GATEWAY and ctx.reason == Reason.BLOCKED
        await flow.close()
        await admin.close()
    asyncio.run(scenario())


def test_blocking_a_waiting_client_ends_the_wait(make_portal, admit_admin, until):
    async def scenario():
        portal = await make_portal()
        admin = await admit_admin(portal)
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        waiter = asyncio.create_task(flow.wait_for_decision(timeout=2))
        await asyncio.sleep(0)
        await portal.moderation.block("admin-1", "u1")
        ctx = await waiter
        assert ctx.state == S.AWAITING_GATEWAY
        assert ctx.reason == Reason.BLOCKED
        await flow.close()
        await admin.close()
    asyncio.run(scenario())


def test_listener_hears_watcher_driven_changes(make_portal):
    async def scenario():
        portal = await make_portal()
        seen = []

        async def listener(ctx):
            seen.append(ctx.state)

        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1", listener)
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        assert seen == []
        waiter = asyncio.create_task(flow.wait_for_decision(timeout=2))
        await asyncio.sleep(0)
        await portal.approvals.approve(flow.context.request_id)
        await waiter
        assert seen == [S.AWAITING_BIOMETRIC]
        await flow.close()
    asyncio.run(scenario())


def test_new_registrant_stays_queued_while_watchers_catch_up(make_portal, admit_admin, until):
    async def scenario():
        portal = await make_portal()
        admin = await admit_admin(portal)
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        for _ in range(5):
            await asyncio.sleep(0)
        assert flow.state == S.AWAITING_APPROVAL
        assert flow.context.reason is None

        # A real deletion still resets the client.
        await portal.moderation.delete_user("admin-1", "u1")
        await until(lambda: flow.state == S.AWAITING_GATEWAY)
        assert flow.context.reason in (Reason.SESSION_REVOKED, Reason.REQUEST_DENIED)
        await flow.close()
        await admin.close()
    asyncio.run(scenario())


def test_callsign_race_keeps_the_losers_invite(make_portal):
    async def scenario():
        portal = await make_portal()
        invites = [await portal.access.issue_invite_key() for _ in range(2)]
        flows = [portal.open_flow(uid) for uid in ("u1", "u2")]
        for flow in flows:
            await flow.submit_gateway(OPERATIVE_PHRASE)

        results = await asyncio.gather(
            *(flow.submit_identity("FALCON", inv.key) for flow, inv in zip(flows, invites)),
            return_exceptions=True,
        )
        losers = [i for i, r in enumerate(results) if isinstance(r, CallsignTaken)]
        assert len(losers) == 1
        loser = losers[0]
        winner = 1 - loser
        assert flows[winner].state == S.AWAITING_APPROVAL
        assert flows[loser].state == S.AWAITING_IDENTITY
        assert portal.identity.get(flows[loser].user_id) is None
        assert portal.access.is_invite_valid(invites[loser].key)
        assert not portal.access.is_invite_valid(invites[winner].key)
        for flow in flows:
            await flow.close()
    asyncio.run(scenario())


def test_shared_invite_race_rolls_back_the_loser(make_portal):
    async def scenario():
        portal = await make_portal()
        invite = await portal.access.issue_invite_key()
        flows = [portal.open_flow(uid) for uid in ("u1", "u2")]
        for flow in flows:
            await flow.submit_gateway(OPERATIVE_PHRASE)

        results = await asyncio.gather(
            flows[0].submit_identity("FALCON", invite.key),
            flows[1].submit_identity("HAWK", invite.key),
            return_exceptions=True,
        )
        losers = [i for i, r in enumerate(results) if isinstance(r, IdentityDenied)]
        assert len(losers) == 1
        loser = flows[losers[0]]
        assert loser.state == S.AWAITING_IDENTITY
        assert portal.identity.get(loser.user_id) is None
        assert portal.identity.owner_of("HAWK" if loser.user_id == "u2" else "FALCON") is None
        assert len(portal.identity.list_users()) == 1
        for flow in flows:
            await flow.close()
    asyncio.run(scenario())


def test_approval_granted_while_away_is_resumed(make_portal):
    async def scenario():
        portal = await make_portal()
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow("u1")
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity("FALCON", invite.key)
        request_id = flow.context.request_id
        await flow.close()

        code = await portal.approvals.approve(request_id)

        back = portal.open_flow("u1")
        await back.submit_gateway(OPERATIVE_PHRASE)
        await back.submit_identity("FALCON")
        assert back.context.request_id == request_id
        assert back.state == S.AWAITING_BIOMETRIC
        assert portal.approvals.pending() == []

        # Leaving again before the capture resumes at the same point.
        await back.close()
        again = portal.open_flow("u1")
        await again.submit_gateway(OPERATIVE_PHRASE)
        await again.submit_identity("FALCON")
        assert again.context.request_id == request_id
        assert again.state == S.AWAITING_BIOMETRIC

        await again.submit_biometric(b"face")
        await again.submit_session_code(code)
        assert again.state == S.ACTIVE
        assert portal.approvals.get(request_id).status == RequestStatus.REDEEMED

        # A spent code is never resumed; the next login queues afresh.
        await again.logout()
        await again.submit_gateway(OPERATIVE_PHRASE)
        await again.submit_identity("FALCON")
        assert again.state == S.AWAITING_APPROVAL
        assert again.context.request_id != request_id
        await again.close()
    asyncio.run(scenario())
