"""
portal.py — wires the components together and guards the ACTIVE-only calls.

`send`, `subscribe`, `history` and the admin entry points all start by
verifying the caller's session token against the live `sessions` record and
the user's current record, so a blocked, deleted or terminated client is
refused here even if it ignores its own state machine.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple, Union

from . import crypto
from .access import AccessRegistry
from .admission import AdmissionFlow, Listener
from .approvals import ApprovalQueue, IdentityChangeRequest
from .channel import Attachment, Message, MessageChannel, MessageStream, Viewer
from .config import PortalConfig
from .errors import Blocked, SessionRevoked
from .identity import IdentityStore, User
from .moderation import ModerationController
from .sessions import SessionAuthority, SessionGrant
from .store import DocumentStore

log = logging.getLogger("gatechat.portal")


class Portal:
    def __init__(
        self,
        config: Optional[PortalConfig] = None,
        privkey=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or PortalConfig.from_env()
        self.store = DocumentStore(clock)
        self.identity = IdentityStore(self.store)
        self.access = AccessRegistry(self.store)
        self.approvals = ApprovalQueue(self.store, self.identity, self.config.approval_timeout)
        self.channel = MessageChannel(self.store, self.identity, self.config.max_attachment_bytes)
        if privkey is None:
            privkey = crypto.load_or_create_privkey(self.config.key_path)
        self.sessions = SessionAuthority(self.store, privkey)
        self.moderation = ModerationController(
            self.identity, self.access, self.approvals, self.channel, self.sessions
        )

    async def start(self) -> "Portal":
        await self.access.ensure_gateway(self.config.operative_phrase, self.config.admin_phrase)
        return self

    def open_flow(self, user_id: str, listener: Optional[Listener] = None) -> AdmissionFlow:
        """Start admission for one client. Must be called from a running loop."""
        return AdmissionFlow(self, user_id, listener).start()

    # ---------------------
    # ACTIVE-session guards
    # ---------------------

    def authenticate(self, token: str) -> Tuple[SessionGrant, User]:
        grant = self.sessions.verify(token)
        user = self.identity.get(grant.user_id)
        if user is None:
            raise SessionRevoked("User no longer exists")
        if user.is_blocked:
            raise Blocked("User is blocked")
        return grant, user

    def actor(self, token: str) -> str:
        """User id behind a token, for moderation calls (which check the role)."""
        return self.authenticate(token)[1].id

    def _viewer(self, token: str) -> Viewer:
        grant, user = self.authenticate(token)
        return Viewer(user.id, user.callsign, self.identity.is_admin(user.id), grant.started_at)

    async def send(
        self,
        token: str,
        recipient: str,
        content: str,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        _, user = self.authenticate(token)
        return await self.channel.send(user.id, user.callsign, recipient, content, attachment)

    def subscribe(self, token: str) -> MessageStream:
        return self.channel.subscribe(self._viewer(token))

    def history(self, token: str) -> List[Message]:
        return self.channel.history(self._viewer(token))

    async def request_identity_change(self, token: str, new_callsign: str) -> Union[User, IdentityChangeRequest]:
        """Admins are renamed on the spot; everyone else joins the queue."""
        _, user = self.authenticate(token)
        if self.identity.is_admin(user.id):
            return await self.moderation.rename_self(user.id, new_callsign)
        return await self.approvals.submit_identity_change(user.id, new_callsign)
