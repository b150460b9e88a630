"""
config.py — runtime settings for the portal, read from GATECHAT_* env vars.

Set these on the server process before running:
  GATECHAT_OPERATIVE_PHRASE      gateway phrase for ordinary operatives
  GATECHAT_ADMIN_PHRASE          gateway phrase for the admin track (unset = disabled)
  GATECHAT_APPROVAL_TIMEOUT      seconds a request may wait / a code may be redeemed
  GATECHAT_ALLOW_UNINVITED       let unregistered users queue without an invite key
  GATECHAT_INVITED_SKIP_APPROVAL invited first-timers skip the approval queue
  GATECHAT_MAX_ATTACHMENT        byte cap for attachments and biometric captures
  GATECHAT_KEY_PATH              PEM file for the session-signing key
  GATECHAT_LOG_LEVEL             logging level name for the CLI
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_OPERATIVE_PHRASE = "raven.oracle"
DEFAULT_APPROVAL_TIMEOUT = 15 * 60
MAX_PAYLOAD_BYTES = 1024 * 1024  # 1 MiB

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class PortalConfig:
    operative_phrase: str = DEFAULT_OPERATIVE_PHRASE
    admin_phrase: Optional[str] = None
    approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT
    allow_uninvited_queue: bool = False
    invited_skip_approval: bool = False
    max_attachment_bytes: int = MAX_PAYLOAD_BYTES
    key_path: Path = Path.home() / ".gatechat" / "portal_priv.pem"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PortalConfig":
        """Build a config from the environment (or any mapping, for tests)."""
        env = os.environ if env is None else env
        admin_phrase = env.get("GATECHAT_ADMIN_PHRASE", "").strip() or None
        key_path = env.get("GATECHAT_KEY_PATH")
        return cls(
            operative_phrase=env.get("GATECHAT_OPERATIVE_PHRASE", DEFAULT_OPERATIVE_PHRASE),
            admin_phrase=admin_phrase,
            approval_timeout=float(env.get("GATECHAT_APPROVAL_TIMEOUT", DEFAULT_APPROVAL_TIMEOUT)),
            allow_uninvited_queue=_flag(env, "GATECHAT_ALLOW_UNINVITED"),
            invited_skip_approval=_flag(env, "GATECHAT_INVITED_SKIP_APPROVAL"),
            max_attachment_bytes=int(env.get("GATECHAT_MAX_ATTACHMENT", MAX_PAYLOAD_BYTES)),
            key_path=Path(key_path).expanduser() if key_path else cls.key_path,
            log_level=env.get("GATECHAT_LOG_LEVEL", "INFO").upper(),
        )
