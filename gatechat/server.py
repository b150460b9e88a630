"""
server.py — the portal's TCP front end.

One AdmissionFlow per connection. The connection loop reads a frame, hands
it to the matching handler, and writes exactly one reply. On top of that
the server pushes, without being asked:
- STATE frames whenever a live subscription moves the flow (approval,
  denial, block, forced termination);
- CHAT_MSG frames for every visible message while the flow is ACTIVE.

A background sweep expires session requests that waited past the timeout.
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional

from . import crypto
from . import messages as m
from .access import PhraseKind
from .admission import AdmissionContext, AdmissionFlow, AdmissionState
from .channel import MessageStream
from .errors import OutOfSequence, PortalError, SessionRevoked
from .framing import FrameError, read_frame, write_frame
from .portal import Portal

log = logging.getLogger("gatechat.server")

SWEEP_INTERVAL = 30.0


class Connection:
    """Per-connection state: streams, the client's flow, and its background tasks."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.peer = str(writer.get_extra_info("peername"))
        self.flow: Optional[AdmissionFlow] = None
        self.stream: Optional[MessageStream] = None
        self.pump: Optional[asyncio.Task] = None
        self.waiter: Optional[asyncio.Task] = None
        self.write_lock = asyncio.Lock()


class PortalServer:
    def __init__(self, portal: Portal, host: str = "127.0.0.1", port: int = 9000,
                 sweep_interval: float = SWEEP_INTERVAL) -> None:
        self.portal = portal
        self.host = host
        self.port = port
        self.sweep_interval = sweep_interval
        self.connections: Dict[asyncio.StreamWriter, Connection] = {}
        self._server: Optional[asyncio.AbstractServer] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Connection, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            m.HELLO: self._hello,
            m.GATEWAY: self._gateway,
            m.IDENTIFY: self._identify,
            m.BIOMETRIC: self._biometric,
            m.SESSION_CODE: self._session_code,
            m.LOGOUT: self._logout,
            m.SEND: self._send_message,
            m.IDENTITY_CHANGE: self._identity_change,
            m.ADMIN_OP: self._admin_op,
            m.PING: self._ping,
        }

    async def start(self) -> None:
        await self.portal.start()
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        self._sweeper = asyncio.create_task(self._sweep())
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        log.info("Portal listening on %s", addrs)

    @property
    def bound_port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def serve_forever(self) -> None:
        await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        for conn in list(self.connections.values()):
            await self._teardown(conn)

    # ------------------
    # Connection handling
    # ------------------

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = Connection(reader, writer)
        self.connections[writer] = conn
        try:
            while True:
                try:
                    frame = await read_frame(reader)
                except FrameError as exc:
                    await self._send(conn, m.error_frame(None, "BAD_FRAME", str(exc)))
                    break
                if frame is None:
                    break
                await self.process_frame(conn, frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            # Peer went away mid-frame; nothing to do.
            pass
        except Exception:
            log.exception("Connection error from %s", conn.peer)
        finally:
            await self._teardown(conn)

    async def _teardown(self, conn: Connection) -> None:
        self.connections.pop(conn.writer, None)
        self._stop_pump(conn)
        if conn.waiter is not None:
            conn.waiter.cancel()
        if conn.flow is not None:
            # Releases subscriptions only; a pending request stays resumable.
            await conn.flow.close()
            conn.flow = None
        if not conn.writer.is_closing():
            conn.writer.close()
        try:
            await conn.writer.wait_closed()
        except ConnectionError:
            pass

    async def process_frame(self, conn: Connection, frame: Dict[str, Any]) -> None:
        handler = self._handlers.get(frame.get("msg_type"))
        if handler is None:
            await self._send(conn, m.error_frame(frame, "UNKNOWN_TYPE", f"Unknown msg_type {frame.get('msg_type')!r}"))
            return
        try:
            response = await handler(conn, frame)
        except PortalError as exc:
            response = m.error_frame(frame, exc.code, exc.message)
        except (KeyError, TypeError, ValueError) as exc:
            response = m.error_frame(frame, "BAD_REQUEST", f"Malformed {frame.get('msg_type')} body: {exc}")
        await self._send(conn, response)
        self._sync(conn)

    async def _send(self, conn: Connection, frame: Dict[str, Any]) -> None:
        async with conn.write_lock:
            await write_frame(conn.writer, frame)

    # -----------------------------
    # Flow-driven background work
    # -----------------------------

    def _state_frame(self, conn: Connection, request: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = m.state_body(conn.flow.context, conn.flow.session_token)
        if request is None:
            return m.new_envelope(m.STATE, body=body)
        return m.reply(request, m.STATE, body)

    async def _on_change(self, conn: Connection, ctx: AdmissionContext) -> None:
        try:
            await self._send(conn, self._state_frame(conn))
        except ConnectionError:
            return
        self._sync(conn)

    def _sync(self, conn: Connection) -> None:
        """Start/stop the message pump and decision waiter to match the flow's state."""
        flow = conn.flow
        if flow is None:
            return
        if flow.state == AdmissionState.ACTIVE and conn.pump is None and flow.session_token:
            try:
                conn.stream = self.portal.subscribe(flow.session_token)
            except PortalError as exc:
                # Revoked between the transition and now; the session watcher resets the flow.
                log.info("Not streaming to %s: %s", conn.peer, exc.code)
                self._stop_pump(conn)
                return
            conn.pump = asyncio.create_task(self._pump(conn, conn.stream))
        elif flow.state != AdmissionState.ACTIVE:
            self._stop_pump(conn)
        if flow.state == AdmissionState.AWAITING_APPROVAL and (conn.waiter is None or conn.waiter.done()):
            conn.waiter = asyncio.create_task(flow.wait_for_decision())

    def _stop_pump(self, conn: Connection) -> None:
        if conn.stream is not None:
            conn.stream.close()
            conn.stream = None
        if conn.pump is not None:
            conn.pump.cancel()
            conn.pump = None

    async def _pump(self, conn: Connection, stream: MessageStream) -> None:
        try:
            async for msg in stream:
                await self._send(conn, m.new_envelope(m.CHAT_MSG, body=m.message_body(msg)))
        except ConnectionError:
            pass

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.portal.approvals.expire_stale()

    # --------
    # Handlers
    # --------

    def _flow(self, conn: Connection) -> AdmissionFlow:
        if conn.flow is None:
            raise OutOfSequence("Send HELLO first")
        return conn.flow

    def _token(self, conn: Connection) -> str:
        token = self._flow(conn).session_token
        if not token:
            raise SessionRevoked("No active session")
        return token

    async def _hello(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        if conn.flow is not None:
            raise OutOfSequence("HELLO already received")
        device_id = str(frame["body"]["device_id"]).strip()
        if not device_id:
            raise ValueError("device_id must not be empty")
        conn.flow = self.portal.open_flow(device_id, lambda ctx: self._on_change(conn, ctx))
        log.info("HELLO from %s (%s)", device_id, conn.peer)
        return self._state_frame(conn, frame)

    async def _gateway(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        await self._flow(conn).submit_gateway(frame["body"]["phrase"])
        return self._state_frame(conn, frame)

    async def _identify(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        body = frame["body"]
        await self._flow(conn).submit_identity(body["callsign"], body.get("invite_key"))
        return self._state_frame(conn, frame)

    async def _biometric(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        blob = crypto.b64url_decode(frame["body"]["data_b64"])
        await self._flow(conn).submit_biometric(blob)
        return self._state_frame(conn, frame)

    async def _session_code(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        await self._flow(conn).submit_session_code(str(frame["body"]["code"]))
        return self._state_frame(conn, frame)

    async def _logout(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        await self._flow(conn).logout()
        return self._state_frame(conn, frame)

    async def _ping(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        return m.reply(frame, m.PONG, {"echo": frame.get("body")})

    async def _send_message(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        body = frame["body"]
        msg = await self.portal.send(
            self._token(conn),
            body.get("recipient") or "ALL",
            body.get("content") or "",
            m.attachment_from_body(body),
        )
        return m.reply(frame, m.ACK, {"message_id": msg.id, "sent_at": msg.sent_at})

    async def _identity_change(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.portal.request_identity_change(self._token(conn), frame["body"]["callsign"])
        return m.reply(frame, m.ACK, {"result": asdict(result)})

    async def _admin_op(self, conn: Connection, frame: Dict[str, Any]) -> Dict[str, Any]:
        body = frame["body"]
        op = body["op"]
        args = body.get("args") or {}
        actor = self.portal.actor(self._token(conn))
        mod = self.portal.moderation

        if op == "users":
            result: Any = [asdict(u) for u in mod.list_users(actor)]
        elif op == "pending":
            result = [asdict(r) for r in mod.pending_sessions(actor)]
        elif op == "approve":
            result = {"session_code": await mod.approve_session(actor, args["request_id"])}
        elif op == "deny":
            result = {"denied": await mod.deny_session(actor, args["request_id"])}
        elif op == "block":
            result = asdict(await mod.block(actor, args["user_id"]))
        elif op == "unblock":
            result = asdict(await mod.unblock(actor, args["user_id"]))
        elif op == "delete":
            result = {"deleted": await mod.delete_user(actor, args["user_id"])}
        elif op == "terminate":
            result = {"revoked": await mod.terminate_session(actor, args["user_id"])}
        elif op == "renames":
            result = [asdict(r) for r in mod.pending_identity_changes(actor)]
        elif op == "approve-rename":
            user = await mod.approve_identity_change(actor, args["request_id"])
            result = asdict(user) if user else None
        elif op == "deny-rename":
            result = {"denied": await mod.deny_identity_change(actor, args["request_id"])}
        elif op == "invite":
            result = asdict(await mod.issue_invite(actor))
        elif op == "gateway":
            await mod.update_gateway(actor, PhraseKind(args["kind"]), args["phrase"])
            result = {"updated": args["kind"]}
        elif op == "broadcast":
            msg = await mod.broadcast(actor, args.get("recipient") or "ALL", args["content"])
            result = {"message_id": msg.id}
        elif op == "purge":
            result = {"purged": await mod.purge_log(actor)}
        else:
            raise ValueError(f"Unknown admin op {op!r}")
        return m.reply(frame, m.ACK, {"op": op, "result": result})
