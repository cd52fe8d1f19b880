"""
Viewer-side smoke test for the chat relay.

Connects to a running relay, joins one or more rooms and prints every frame
it receives. Useful to check provisioning end to end without an overlay.
"""

import argparse
import asyncio
import json
import os

from dotenv import load_dotenv
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from shared.logging.logger import get_logger

log = get_logger("relay.viewer_poc")


def _env(key: str) -> str:
    return os.getenv(key, "").strip()


def _format_frame(frame: dict) -> str:
    if frame.get("status"):
        return f"✅ {frame.get('status')} {frame.get('room')}"
    if frame.get("type"):
        detail = frame.get("msgId") or frame.get("userId") or ""
        return f"🧹 {frame['type']} {detail}".rstrip()
    prefix = "*" if frame.get("isAction") else "💬"
    return f"{prefix} [{frame.get('platform')}] {frame.get('user')} → {frame.get('message')}"


async def _run(args) -> None:
    load_dotenv()

    url = args.url or _env("RELAY_URL") or "ws://localhost:8080"
    rooms = [room.split(":", 1) for room in args.room]
    for room in rooms:
        if len(room) != 2 or not all(room):
            raise RuntimeError(f"Invalid --room value {':'.join(room)!r}; expected platform:channel")

    async with connect(url) as ws:
        log.info(f"Connected to relay at {url}")
        for platform, channel in rooms:
            await ws.send(json.dumps({"action": "join", "platform": platform, "channel": channel}))

        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    log.warning(f"Non-JSON frame from relay: {raw!r}")
                    continue
                print(_format_frame(frame))
        except ConnectionClosed:
            log.info("Relay closed the connection")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Chat relay viewer smoke test"
    )
    parser.add_argument("--url", help="Relay websocket URL (default ws://localhost:8080)")
    parser.add_argument(
        "--room",
        action="append",
        required=True,
        help="Room to join as platform:channel (repeatable), e.g. twitch:shroud",
    )

    args = parser.parse_args()
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutting down POC")


if __name__ == "__main__":
    main()
