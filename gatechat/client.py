"""
client.py — a thin asyncio client for the portal's TCP front end.

Requests are correlated with their replies by `reply_to`; anything the
server pushes on its own (STATE changes, CHAT_MSG) lands in `inbox`.
ERROR replies are raised as the matching PortalError subclass.

The device id is the user's stable identity, so it's kept on disk under
~/.gatechat/<name>.id and reused across runs.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from . import crypto
from . import messages as m
from .errors import from_code
from .framing import read_frame, write_frame

log = logging.getLogger("gatechat.client")

DEVICE_DIR = Path.home() / ".gatechat"


def load_device_id(name: str, directory: Path = DEVICE_DIR) -> str:
    """Return the device id stored for `name`, creating one the first time."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.id"
    if path.exists():
        device_id = path.read_text(encoding="utf-8").strip()
        if device_id:
            return device_id
    device_id = str(uuid.uuid4())
    path.write_text(device_id + "\n", encoding="utf-8")
    log.info("Generated device id for %s at %s", name, path)
    return device_id


class PortalClient:
    def __init__(self, device_id: str, host: str = "127.0.0.1", port: int = 9000) -> None:
        self.device_id = device_id
        self.host = host
        self.port = port
        self.inbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self.state: Dict[str, Any] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def session_token(self) -> Optional[str]:
        return self.state.get("session_token")

    async def connect(self) -> Dict[str, Any]:
        """Open the connection and say HELLO. Returns the initial state body."""
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        self._reader_task = asyncio.create_task(self.reader_loop())
        return await self.request(m.HELLO, {"device_id": self.device_id})

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass

    async def reader_loop(self) -> None:
        """Route replies to their waiting request; queue everything else."""
        try:
            while True:
                frame = await read_frame(self._reader)
                if frame is None:
                    break
                if frame.get("msg_type") == m.STATE:
                    self.state = frame.get("body", {})
                waiter = self._pending.pop(frame.get("reply_to") or "", None)
                if waiter is not None:
                    if not waiter.done():
                        waiter.set_result(frame)
                else:
                    await self.inbox.put(frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            for waiter in self._pending.values():
                if not waiter.done():
                    waiter.set_exception(ConnectionError("Portal closed the connection"))
            self._pending.clear()

    async def request(self, msg_type: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one request frame and return its reply body (raises on ERROR)."""
        env = m.new_envelope(msg_type, from_id=self.device_id, body=body)
        waiter = asyncio.get_running_loop().create_future()
        self._pending[env["msg_id"]] = waiter
        await write_frame(self._writer, env)
        frame = await waiter
        reply_body = frame.get("body", {})
        if frame.get("msg_type") == m.ERROR:
            raise from_code(reply_body.get("code", ""), reply_body.get("message", ""))
        return reply_body

    async def next_push(self, msg_type: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait for the next pushed frame of `msg_type`, dropping others."""
        async def _wait() -> Dict[str, Any]:
            while True:
                frame = await self.inbox.get()
                if frame.get("msg_type") == msg_type:
                    return frame
        return await asyncio.wait_for(_wait(), timeout)

    async def wait_for_state(self, *states: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait until a pushed STATE frame reports one of `states`."""
        if self.state.get("state") in states:
            return self.state

        async def _wait() -> Dict[str, Any]:
            while True:
                frame = await self.next_push(m.STATE)
                if frame["body"].get("state") in states:
                    return frame["body"]
        return await asyncio.wait_for(_wait(), timeout)

    # -------------
    # Admission
    # -------------

    async def gateway(self, phrase: str) -> Dict[str, Any]:
        return await self.request(m.GATEWAY, {"phrase": phrase})

    async def identify(self, callsign: str, invite_key: Optional[str] = None) -> Dict[str, Any]:
        return await self.request(m.IDENTIFY, {"callsign": callsign, "invite_key": invite_key})

    async def biometric(self, blob: bytes) -> Dict[str, Any]:
        return await self.request(m.BIOMETRIC, {"data_b64": crypto.b64url_encode(blob)})

    async def session_code(self, code: str) -> Dict[str, Any]:
        return await self.request(m.SESSION_CODE, {"code": code})

    async def logout(self) -> Dict[str, Any]:
        return await self.request(m.LOGOUT)

    # -------------
    # Active session
    # -------------

    async def send(self, recipient: str, content: str, attachment: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """`attachment` is {name, mime_type, data: bytes} or None."""
        body: Dict[str, Any] = {"recipient": recipient, "content": content}
        if attachment is not None:
            body["attachment"] = {
                "name": attachment.get("name"),
                "mime_type": attachment.get("mime_type"),
                "data_b64": crypto.b64url_encode(attachment["data"]),
            }
        return await self.request(m.SEND, body)

    async def change_callsign(self, callsign: str) -> Dict[str, Any]:
        return await self.request(m.IDENTITY_CHANGE, {"callsign": callsign})

    async def admin(self, op: str, **args: Any) -> Any:
        reply_body = await self.request(m.ADMIN_OP, {"op": op, "args": args})
        return reply_body.get("result")

    async def ping(self) -> Dict[str, Any]:
        return await self.request(m.PING, {"t": m.now_ms()})
