"""
gatechat — a gated, ephemeral messaging portal.

Admission runs through a fixed sequence before a client may read or post:
gateway phrase, callsign (plus an invite key the first time), administrator
approval, a one-time biometric capture, and finally a session code. Admins
come in on their own phrase and skip the queue.

Everything lives in an in-process document store with live subscriptions;
clients talk to it over length-prefixed JSON frames on TCP.

Set GATECHAT_ADMIN_PHRASE on the server to enable the admin track.
"""
__all__ = [
    "access", "admission", "approvals", "channel", "client", "config", "crypto",
    "errors", "framing", "identity", "messages", "moderation", "portal",
    "run_portal", "server", "sessions", "store",
]
