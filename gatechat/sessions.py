"""
sessions.py — server-side session validity for ACTIVE clients.

A token is `<claims>.<signature>`: base64url canonical JSON claims, signed
with the portal's RSA-4096 key (RSA-PSS, see crypto.py). A token is only
honoured while its `sessions` record exists, so blocking, deleting or
terminating a user takes effect on the very next send/subscribe, whether
or not the client is cooperating.
"""

import json
import logging
from dataclasses import dataclass
from typing import Tuple

from . import crypto
from .errors import SessionRevoked, Unauthorized
from .store import DocumentStore, Subscription

log = logging.getLogger("gatechat.sessions")

SESSIONS = "sessions"


@dataclass(frozen=True)
class SessionGrant:
    session_id: str
    user_id: str
    is_admin: bool
    started_at: float


class SessionAuthority:
    def __init__(self, store: DocumentStore, privkey) -> None:
        self.store = store
        self._privkey = privkey
        self._pubkey = privkey.public_key()

    async def open(self, user_id: str, callsign: str, is_admin: bool) -> Tuple[str, SessionGrant]:
        doc = await self.store.add(SESSIONS, {
            "user_id": user_id,
            "callsign": callsign,
            "is_admin": is_admin,
        }, timestamp_field="started_at")
        grant = SessionGrant(doc["id"], user_id, is_admin, doc["started_at"])
        claims = {"sid": grant.session_id, "uid": user_id, "adm": is_admin, "iat": grant.started_at}
        payload = crypto.b64url_encode(crypto.canonical_json_bytes(claims))
        token = f"{payload}.{crypto.sign(self._privkey, payload.encode('ascii'))}"
        log.info("Session %s opened for %s", grant.session_id, callsign)
        return token, grant

    def verify(self, token: str) -> SessionGrant:
        """Signature first, then liveness. Raises Unauthorized / SessionRevoked."""
        try:
            payload, sig = (token or "").split(".", 1)
            signed = payload.encode("ascii")
        except ValueError:
            raise Unauthorized("Malformed session token") from None
        if not crypto.verify(self._pubkey, signed, sig):
            raise Unauthorized("Session token signature is invalid")
        claims = json.loads(crypto.b64url_decode(payload))
        record = self.store.get(SESSIONS, claims["sid"])
        if record is None or record["user_id"] != claims["uid"]:
            raise SessionRevoked("Session is no longer valid")
        return SessionGrant(claims["sid"], claims["uid"], claims["adm"], claims["iat"])

    def watch(self, session_id: str) -> Subscription:
        return self.store.watch_document(SESSIONS, session_id)

    async def revoke(self, session_id: str) -> bool:
        return await self.store.delete(SESSIONS, session_id)

    async def revoke_user(self, user_id: str) -> int:
        revoked = 0
        for doc in self.store.query(SESSIONS, lambda d: d["user_id"] == user_id):
            revoked += int(await self.revoke(doc["id"]))
        if revoked:
            log.warning("Revoked %d live session(s) of %s", revoked, user_id)
        return revoked
