"""
messages.py — frame envelopes and the body shapes the portal puts in them.

Every frame is an envelope:

    {version, msg_type, msg_id, reply_to, timestamp_ms, from, body}

Requests from a client get exactly one reply (STATE, ACK or ERROR) whose
`reply_to` is the request's `msg_id`. Frames the server pushes on its own
(state changes, chat messages) have `reply_to: null`.
"""

import time
import uuid
from typing import Any, Dict, Optional

from . import crypto
from .admission import AdmissionContext
from .channel import Attachment, Message

VERSION = "1.0"
SERVER_ID = "portal"

# Client -> server
HELLO = "HELLO"
GATEWAY = "GATEWAY"
IDENTIFY = "IDENTIFY"
BIOMETRIC = "BIOMETRIC"
SESSION_CODE = "SESSION_CODE"
LOGOUT = "LOGOUT"
SEND = "SEND"
IDENTITY_CHANGE = "IDENTITY_CHANGE"
ADMIN_OP = "ADMIN_OP"
PING = "PING"

# Server -> client
STATE = "STATE"
CHAT_MSG = "CHAT_MSG"
ACK = "ACK"
ERROR = "ERROR"
PONG = "PONG"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_envelope(
    msg_type: str,
    from_id: str = SERVER_ID,
    body: Optional[Dict[str, Any]] = None,
    reply_to: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "version": VERSION,
        "msg_type": msg_type,
        "msg_id": str(uuid.uuid4()),
        "reply_to": reply_to,
        "timestamp_ms": now_ms(),
        "from": from_id,
        "body": body or {},
    }


def reply(request: Dict[str, Any], msg_type: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return new_envelope(msg_type, body=body, reply_to=request.get("msg_id"))


def error_frame(request: Optional[Dict[str, Any]], code: str, message: str) -> Dict[str, Any]:
    return new_envelope(
        ERROR,
        body={"code": code, "message": message},
        reply_to=(request or {}).get("msg_id"),
    )


# ----------
# Body shapes
# ----------

def state_body(ctx: AdmissionContext, session_token: Optional[str] = None) -> Dict[str, Any]:
    return {
        "state": ctx.state.value,
        "track": ctx.track.value if ctx.track else None,
        "callsign": ctx.callsign,
        "request_id": ctx.request_id,
        "reason": ctx.reason.value if ctx.reason else None,
        "session_token": session_token,
    }


def message_body(msg: Message) -> Dict[str, Any]:
    att = msg.attachment
    return {
        "id": msg.id,
        "sender": msg.sender,
        "user_id": msg.user_id,
        "recipient": msg.recipient,
        "content": msg.content,
        "sent_at": msg.sent_at,
        "attachment": None if att is None else {
            "name": att.name,
            "mime_type": att.mime_type,
            "data_b64": crypto.b64url_encode(att.blob),
        },
    }


def attachment_from_body(body: Dict[str, Any]) -> Optional[Attachment]:
    att = body.get("attachment")
    if not att:
        return None
    return Attachment(
        name=str(att.get("name") or "attachment"),
        mime_type=str(att.get("mime_type") or "application/octet-stream"),
        blob=crypto.b64url_decode(att.get("data_b64") or ""),
    )
