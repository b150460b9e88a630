"""
errors.py — the portal's rejection taxonomy.

Every rejection carries a stable reason `code` so a client can tell one
failure from another (and from success). The server turns these into
ERROR frames verbatim; nothing here ever mutates state.
"""

from typing import Dict, Type


class PortalError(Exception):
    """Base class: a rejected operation with a machine-readable reason code."""
    code = "PORTAL_ERROR"
    recoverable = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_body(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class GatewayMismatch(PortalError):
    code = "GATEWAY_MISMATCH"


class IdentityDenied(PortalError):
    code = "IDENTITY_DENIED"


class CallsignTaken(PortalError):
    code = "CALLSIGN_TAKEN"


class InvalidCallsign(PortalError):
    code = "INVALID_CALLSIGN"


class InvalidSessionCode(PortalError):
    code = "INVALID_SESSION_CODE"


class RequestDenied(PortalError):
    code = "REQUEST_DENIED"


class RequestExpired(PortalError):
    code = "REQUEST_EXPIRED"


class DuplicatePendingRequest(PortalError):
    """
    Reserved. Nothing raises it: ApprovalQueue.submit hands back the open
    request instead. Kept so the code maps to a class on the client side.
    """
    code = "DUPLICATE_PENDING_REQUEST"


class AttachmentTooLarge(PortalError):
    code = "ATTACHMENT_TOO_LARGE"


class CaptureTooLarge(PortalError):
    code = "CAPTURE_TOO_LARGE"


class EmptyCapture(PortalError):
    code = "EMPTY_CAPTURE"


class EmptyMessage(PortalError):
    code = "EMPTY_MESSAGE"


class OutOfSequence(PortalError):
    code = "OUT_OF_SEQUENCE"


class NotFound(PortalError):
    code = "NOT_FOUND"


class Unauthorized(PortalError):
    code = "UNAUTHORIZED"
    recoverable = False


class ProtectedUser(PortalError):
    code = "PROTECTED_USER"
    recoverable = False


class SessionRevoked(PortalError):
    code = "SESSION_REVOKED"
    recoverable = False


class Blocked(PortalError):
    code = "BLOCKED"
    recoverable = False


ERRORS_BY_CODE: Dict[str, Type[PortalError]] = {
    cls.code: cls
    for cls in (
        GatewayMismatch, IdentityDenied, CallsignTaken, InvalidCallsign,
        InvalidSessionCode, RequestDenied, RequestExpired, DuplicatePendingRequest,
        AttachmentTooLarge, CaptureTooLarge, EmptyCapture, EmptyMessage, OutOfSequence,
        NotFound, Unauthorized, ProtectedUser, SessionRevoked, Blocked,
    )
}


def from_code(code: str, message: str = "") -> PortalError:
    """Rebuild an exception from an ERROR frame body (used by the client)."""
    cls = ERRORS_BY_CODE.get(code, PortalError)
    err = cls(message)
    if cls is PortalError:
        err.code = code
    return err
