"""
moderation.py — admin-only operations.

Every public method takes the acting user's id first and checks the
AdminRole table before touching anything (validate-then-write). Users who
hold an AdminRole can't be blocked or deleted from here.

Actions are logged at INFO/WARNING on `gatechat.moderation` as the audit trail.
"""

import logging
from typing import List, Optional

from .access import AccessRegistry, InviteKey, PhraseKind
from .approvals import ApprovalQueue, IdentityChangeRequest, SessionRequest
from .channel import Attachment, Message, MessageChannel
from .errors import NotFound, ProtectedUser, Unauthorized
from .identity import IdentityStore, User
from .sessions import SessionAuthority

log = logging.getLogger("gatechat.moderation")


class ModerationController:
    def __init__(
        self,
        identity: IdentityStore,
        access: AccessRegistry,
        approvals: ApprovalQueue,
        channel: MessageChannel,
        sessions: SessionAuthority,
    ) -> None:
        self.identity = identity
        self.access = access
        self.approvals = approvals
        self.channel = channel
        self.sessions = sessions

    def _require_admin(self, actor_id: str) -> User:
        actor = self.identity.get(actor_id)
        if actor is None or not self.identity.is_admin(actor_id):
            log.warning("Rejected admin operation from %s", actor_id)
            raise Unauthorized("Administrative authority required")
        return actor

    def _require_ordinary(self, target_id: str) -> User:
        target = self.identity.get(target_id)
        if target is None:
            raise NotFound(f"No user {target_id}")
        if self.identity.is_admin(target_id):
            raise ProtectedUser("Administrators can't be blocked or deleted")
        return target

    # -----
    # Users
    # -----

    def list_users(self, actor_id: str) -> List[User]:
        self._require_admin(actor_id)
        return self.identity.list_users()

    async def block(self, actor_id: str, target_id: str) -> User:
        actor = self._require_admin(actor_id)
        self._require_ordinary(target_id)
        user = await self.identity.set_blocked(target_id, True)
        await self.sessions.revoke_user(target_id)
        log.warning("%s blocked %s (%s)", actor.callsign, user.callsign, target_id)
        return user

    async def unblock(self, actor_id: str, target_id: str) -> User:
        actor = self._require_admin(actor_id)
        self._require_ordinary(target_id)
        user = await self.identity.set_blocked(target_id, False)
        log.info("%s unblocked %s (%s)", actor.callsign, user.callsign, target_id)
        return user

    async def delete_user(self, actor_id: str, target_id: str) -> bool:
        """Hard delete. Open requests and sessions go too; sent messages stay."""
        actor = self._require_admin(actor_id)
        target = self._require_ordinary(target_id)
        await self.approvals.purge_user(target_id)
        await self.sessions.revoke_user(target_id)
        deleted = await self.identity.delete(target_id)
        log.warning("%s purged user %s (%s)", actor.callsign, target.callsign, target_id)
        return deleted

    async def terminate_session(self, actor_id: str, target_id: str) -> int:
        """Kick the user's live sessions without blocking them."""
        actor = self._require_admin(actor_id)
        target = self._require_ordinary(target_id)
        revoked = await self.sessions.revoke_user(target_id)
        log.warning("%s terminated %d session(s) of %s", actor.callsign, revoked, target.callsign)
        return revoked

    # -----------------
    # Session approvals
    # -----------------

    def pending_sessions(self, actor_id: str) -> List[SessionRequest]:
        self._require_admin(actor_id)
        return self.approvals.pending()

    async def approve_session(self, actor_id: str, request_id: str) -> Optional[str]:
        actor = self._require_admin(actor_id)
        code = await self.approvals.approve(request_id)
        if code is not None:
            log.info("%s approved session request %s", actor.callsign, request_id)
        return code

    async def deny_session(self, actor_id: str, request_id: str) -> bool:
        actor = self._require_admin(actor_id)
        denied = await self.approvals.deny(request_id)
        if denied:
            log.info("%s denied session request %s", actor.callsign, request_id)
        return denied

    # ------------------
    # Callsign changes
    # ------------------

    def pending_identity_changes(self, actor_id: str) -> List[IdentityChangeRequest]:
        self._require_admin(actor_id)
        return self.approvals.pending_identity_changes()

    async def approve_identity_change(self, actor_id: str, request_id: str) -> Optional[User]:
        actor = self._require_admin(actor_id)
        user = await self.approvals.approve_identity_change(request_id)
        if user is not None:
            log.info("%s approved rename of %s to %s", actor.callsign, user.id, user.callsign)
        return user

    async def deny_identity_change(self, actor_id: str, request_id: str) -> bool:
        self._require_admin(actor_id)
        return await self.approvals.deny_identity_change(request_id)

    async def rename_self(self, actor_id: str, new_callsign: str) -> User:
        """Admins change their own callsign immediately, no queue."""
        self._require_admin(actor_id)
        return await self.identity.rename(actor_id, new_callsign)

    # -----------------
    # Channel & gateway
    # -----------------

    async def broadcast(
        self,
        actor_id: str,
        recipient: str,
        content: str,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        actor = self._require_admin(actor_id)
        return await self.channel.send(actor.id, actor.callsign, recipient, content, attachment)

    async def purge_log(self, actor_id: str) -> int:
        actor = self._require_admin(actor_id)
        removed = await self.channel.purge()
        log.warning("%s purged the message log (%d messages)", actor.callsign, removed)
        return removed

    async def update_gateway(self, actor_id: str, kind: PhraseKind, new_phrase: str) -> None:
        actor = self._require_admin(actor_id)
        await self.access.update_gateway(kind, new_phrase)
        log.warning("%s changed the %s gateway phrase", actor.callsign, PhraseKind(kind).value)

    async def issue_invite(self, actor_id: str) -> InviteKey:
        actor = self._require_admin(actor_id)
        invite = await self.access.issue_invite_key()
        log.info("%s issued invite %s", actor.callsign, invite.key)
        return invite
