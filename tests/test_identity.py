import asyncio

import pytest

from gatechat.errors import CallsignTaken, InvalidCallsign
from gatechat.identity import IdentityStore, canonical_callsign
from gatechat.store import DocumentStore


def test_canonical_callsign():
    assert canonical_callsign("  falcon ") == "FALCON"
    assert canonical_callsign("night-owl.7") == "NIGHT-OWL.7"
    for bad in ("", "   ", "two words", "x" * 25, "all", "ALL"):
        with pytest.raises(InvalidCallsign):
            canonical_callsign(bad)


def test_register_claims_callsign_once():
    async def scenario():
        identity = IdentityStore(DocumentStore())
        user = await identity.register("u1", "falcon")
        assert user.callsign == "FALCON"
        assert identity.owner_of("falcon") == "u1"
        with pytest.raises(CallsignTaken):
            await identity.register("u2", "FALCON")
        assert identity.get("u2") is None
    asyncio.run(scenario())


def test_racing_registrations_for_one_callsign_have_one_winner():
    async def scenario():
        identity = IdentityStore(DocumentStore())
        results = await asyncio.gather(
            identity.register("u1", "HAWK"), identity.register("u2", "HAWK"),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert isinstance([r for r in results if isinstance(r, Exception)][0], CallsignTaken)
        assert identity.owner_of("HAWK") == winners[0].id
    asyncio.run(scenario())


def test_rename_moves_the_claim_and_syncs_admin_role():
    async def scenario():
        store = DocumentStore()
        identity = IdentityStore(store)
        await identity.register("a1", "OVERSEER", is_admin=True)
        await identity.grant_admin("a1")
        user = await identity.rename("a1", "warden")
        assert user.callsign == "WARDEN"
        assert identity.owner_of("OVERSEER") is None
        assert identity.owner_of("WARDEN") == "a1"
        assert store.get("rolesAdmin", "a1")["callsign"] == "WARDEN"
    asyncio.run(scenario())


def test_delete_releases_callsign_and_biometric():
    async def scenario():
        store = DocumentStore()
        identity = IdentityStore(store)
        await identity.register("u1", "FALCON")
        ref = await identity.store_biometric("u1", b"face")
        assert ref == "biometrics/u1"
        assert identity.get("u1").biometric_ref == ref
        assert await identity.delete("u1") is True
        assert identity.get("u1") is None
        assert identity.owner_of("FALCON") is None
        assert store.get("biometrics", "u1") is None
        assert await identity.delete("u1") is False
        await identity.register("u2", "FALCON")
    asyncio.run(scenario())
