import asyncio

import pytest

from gatechat import crypto
from gatechat.config import PortalConfig
from gatechat.portal import Portal

OPERATIVE_PHRASE = "raven.oracle"
ADMIN_PHRASE = "overseer.protocol"


class FakeClock:
    """Wall clock the tests can move forward by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture(scope="session")
def privkey():
    priv, _ = crypto.generate_rsa4096()
    return priv


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_portal(privkey, clock, tmp_path):
    """Async factory; call it inside the test's event loop."""
    async def factory(**overrides) -> Portal:
        settings = dict(admin_phrase=ADMIN_PHRASE, key_path=tmp_path / "portal_priv.pem")
        settings.update(overrides)
        return await Portal(PortalConfig(**settings), privkey=privkey, clock=clock).start()
    return factory


@pytest.fixture
def until():
    async def wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)
    return wait


@pytest.fixture
def admit_admin():
    """Walk a fresh admin through the admin track to ACTIVE."""
    async def admit(portal, user_id="admin-1", callsign="OVERSEER"):
        flow = portal.open_flow(user_id)
        await flow.submit_gateway(ADMIN_PHRASE)
        await flow.submit_identity(callsign)
        await flow.submit_biometric(b"admin-face")
        return flow
    return admit


@pytest.fixture
def admit_operative():
    """Invite, approve and activate a first-time operative."""
    async def admit(portal, user_id, callsign):
        invite = await portal.access.issue_invite_key()
        flow = portal.open_flow(user_id)
        await flow.submit_gateway(OPERATIVE_PHRASE)
        await flow.submit_identity(callsign, invite.key)
        code = await portal.approvals.approve(flow.context.request_id)
        await flow.refresh()
        await flow.submit_biometric(b"face-" + user_id.encode())
        await flow.submit_session_code(code)
        return flow
    return admit
