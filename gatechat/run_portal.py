"""
run_portal.py — single entry point for the portal in its different modes.

What you can do here:
- serve:   run the portal server (document store + TCP front end)
- client:  walk through admission interactively, then chat
- admin:   a one-shot helper for admin commands (approve, block, invite, ...)

Settings for `serve` come from GATECHAT_* env vars (see config.py); flags
override host and port.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import messages as m
from .client import PortalClient, load_device_id
from .config import PortalConfig
from .errors import PortalError
from .portal import Portal
from .server import PortalServer

log = logging.getLogger("gatechat")


# -------------------------
# Process runners
# -------------------------

async def run_server(host: str, port: int, config: PortalConfig) -> None:
    """Spin up the portal and serve forever on host:port."""
    server = PortalServer(Portal(config), host, port)
    await server.serve_forever()


async def _ainput(prompt: str) -> str:
    return await asyncio.get_running_loop().run_in_executor(None, input, prompt)


def _print_chat(body: Dict[str, Any]) -> None:
    att = body.get("attachment")
    extra = f" [attachment {att['name']} ({att['mime_type']})]" if att else ""
    print(f"[{body.get('sender')} -> {body.get('recipient')}] {body.get('content', '')}{extra}")


async def _admit(client: PortalClient, phrase: str, callsign: str,
                 invite: Optional[str], capture: Optional[Path]) -> None:
    """Drive admission until ACTIVE, prompting for the session code when needed."""
    await client.gateway(phrase)
    state = await client.identify(callsign, invite)
    print(f"Identified as {state['callsign']} ({state['track']} track)")

    if state["state"] == "AWAITING_APPROVAL":
        print(f"Waiting for an administrator to approve request {state['request_id']} ...")
        state = await client.wait_for_state("AWAITING_BIOMETRIC", "AWAITING_SESSION_CODE", "AWAITING_GATEWAY")
        if state["state"] == "AWAITING_GATEWAY":
            raise SystemExit(f"Admission ended: {state['reason']}")

    if state["state"] == "AWAITING_BIOMETRIC":
        if capture is None:
            raise SystemExit("First login needs a biometric capture: pass --capture <image file>")
        state = await client.biometric(capture.read_bytes())

    while state["state"] == "AWAITING_SESSION_CODE":
        code = (await _ainput("Session code: ")).strip()
        try:
            state = await client.session_code(code)
        except PortalError as exc:
            print(f"{exc.code}: {exc.message}")
            if not exc.recoverable or client.state.get("state") != "AWAITING_SESSION_CODE":
                raise SystemExit(1)

    if state["state"] != "ACTIVE":
        raise SystemExit(f"Admission ended in {state['state']}")


async def run_client(args: argparse.Namespace) -> None:
    """
    Interactive client. After admission, each input line is sent to ALL;
    prefix with @CALLSIGN for a direct message, /logout to leave.
    """
    client = PortalClient(load_device_id(args.name), args.host, args.port)
    await client.connect()
    try:
        await _admit(client, args.phrase, args.callsign, args.invite, args.capture)
        print("Session active. Type messages; @CALLSIGN text for direct, /logout to leave.")

        async def printer() -> None:
            while True:
                frame = await client.inbox.get()
                if frame.get("msg_type") == m.CHAT_MSG:
                    _print_chat(frame["body"])
                elif frame.get("msg_type") == m.STATE:
                    body = frame["body"]
                    print(f"* state {body['state']}" + (f" ({body['reason']})" if body.get("reason") else ""))
                    if body["state"] != "ACTIVE":
                        return

        async def composer() -> None:
            while True:
                line = (await _ainput("")).strip()
                if not line:
                    continue
                if line == "/logout":
                    await client.logout()
                    return
                recipient = "ALL"
                if line.startswith("@") and " " in line:
                    recipient, line = line[1:].split(" ", 1)
                try:
                    await client.send(recipient, line)
                except PortalError as exc:
                    print(f"{exc.code}: {exc.message}")

        tasks = {asyncio.create_task(printer()), asyncio.create_task(composer())}
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if client.state.get("state") != "ACTIVE":
            print("Session ended (press Enter to exit).")
    finally:
        await client.close()


async def run_admin(args: argparse.Namespace) -> None:
    """One-shot admin command: admit on the admin track, run one op, print the result."""
    phrase = args.phrase or os.environ.get("GATECHAT_ADMIN_PHRASE")
    if not phrase:
        raise SystemExit("--phrase or GATECHAT_ADMIN_PHRASE is required for admin mode")
    client = PortalClient(load_device_id(args.name), args.host, args.port)
    await client.connect()
    try:
        await _admit(client, phrase, args.callsign, None, args.capture)

        cmd = args.command
        if cmd in ("pending", "users", "renames", "invite", "purge"):
            result = await client.admin(cmd)
        elif cmd in ("approve", "deny", "approve-rename", "deny-rename"):
            result = await client.admin(cmd, request_id=args.request_id)
        elif cmd in ("block", "unblock", "delete", "terminate"):
            result = await client.admin(cmd, user_id=args.user_id)
        elif cmd == "gateway":
            result = await client.admin(cmd, kind=args.kind, phrase=args.new_phrase)
        elif cmd == "broadcast":
            result = await client.admin(cmd, recipient=args.to, content=" ".join(args.message))
        else:
            raise SystemExit(f"Unknown admin command {cmd!r}")
        print(json.dumps(result, indent=2))
        await client.logout()
    except PortalError as exc:
        raise SystemExit(f"{exc.code}: {exc.message}")
    finally:
        await client.close()


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv=None) -> argparse.Namespace:
    """
    Parse modes and subcommands.

    Quick examples:
      Server:   gatechat --mode serve --host 0.0.0.0 --port 9000
      Client:   gatechat --mode client --name alice --phrase raven.oracle --callsign FALCON --invite KEY-ABC123 --capture face.jpg
      Pending:  gatechat --mode admin --name ops --callsign OVERSEER pending
      Approve:  gatechat --mode admin --name ops --callsign OVERSEER approve --request <id>
    """
    p = argparse.ArgumentParser(prog="gatechat")
    p.add_argument("--mode", choices=["serve", "client", "admin"], required=True)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--name", default="default", help="Local profile name; selects the stored device id")
    p.add_argument("--phrase", help="Gateway phrase")
    p.add_argument("--callsign")
    p.add_argument("--invite", help="Invite key for a first login")
    p.add_argument("--capture", type=Path, help="Biometric capture file for a first login")

    sub = p.add_subparsers(dest="command")
    sub.required = False

    for name in ("pending", "users", "renames", "invite", "purge"):
        sub.add_parser(name)

    for name in ("approve", "deny", "approve-rename", "deny-rename"):
        sp = sub.add_parser(name)
        sp.add_argument("--request", dest="request_id", required=True)

    for name in ("block", "unblock", "delete", "terminate"):
        sp = sub.add_parser(name)
        sp.add_argument("--user", dest="user_id", required=True)

    sp = sub.add_parser("gateway")
    sp.add_argument("--kind", choices=["operative", "admin"], required=True)
    sp.add_argument("new_phrase")

    sp = sub.add_parser("broadcast")
    sp.add_argument("--to", default="ALL")
    sp.add_argument("message", nargs=argparse.REMAINDER)

    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    config = PortalConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.mode == "serve":
            asyncio.run(run_server(args.host, args.port, config))

        elif args.mode == "client":
            if not args.phrase or not args.callsign:
                raise SystemExit("--phrase and --callsign are required for client mode")
            asyncio.run(run_client(args))

        elif args.mode == "admin":
            if not args.callsign or not args.command:
                raise SystemExit("--callsign and a command are required for admin mode")
            asyncio.run(run_admin(args))
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
