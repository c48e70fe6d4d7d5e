"""Command-line probe that connects to a node and logs its traffic."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional, Sequence

from .config import Config, NodeOptions
from .logging_config import configure_logging
from .node import NodeConnection

logger = logging.getLogger("lavabridge.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lavabridge-probe",
        description="Connect to an audio node and log what it sends.",
    )
    parser.add_argument("--label", default=Config.LAVALINK_LABEL)
    parser.add_argument("--host", default=Config.LAVALINK_HOST)
    parser.add_argument("--port", type=int, default=Config.LAVALINK_PORT)
    parser.add_argument("--password", default=Config.LAVALINK_PASSWORD)
    parser.add_argument("--user-id", default=Config.LAVALINK_USER_ID)
    parser.add_argument("--shards", type=int, default=Config.LAVALINK_SHARDS)
    parser.add_argument(
        "--reconnect-interval",
        type=float,
        default=Config.LAVALINK_RECONNECT_INTERVAL,
        help="seconds to wait before reconnecting after an abnormal close",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="stop after this many seconds (default: run until disconnected)",
    )
    parser.add_argument("--json-logs", action="store_true")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def options_from_args(args: argparse.Namespace) -> NodeOptions:
    return NodeOptions(
        host=args.label,
        gateway=f"{args.host}:{args.port}",
        password=args.password,
        user_id=str(args.user_id),
        shards=args.shards,
        reconnect_interval=args.reconnect_interval,
    )


async def probe(
    node: NodeConnection, *, duration: Optional[float] = None
) -> Dict[str, Any]:
    """Run ``node`` until it disconnects or ``duration`` elapses."""

    done = asyncio.Event()

    def _on_message(_node: NodeConnection, payload: Dict[str, Any]) -> None:
        logger.info("node message", extra={"op": payload.get("op"), "payload": payload})

    def _on_disconnect(_node: NodeConnection, reason: str) -> None:
        logger.info("node disconnected", extra={"reason": reason})
        done.set()

    node.on_ready.connect(lambda n: logger.info("node ready", extra={"url": n.url}))
    node.on_reconnecting.connect(
        lambda n: logger.info("node reconnecting", extra={"url": n.url})
    )
    node.on_error.connect(
        lambda n, exc: logger.warning("node error", extra={"error": str(exc)})
    )
    node.on_message.connect(_on_message)
    node.on_disconnect.connect(_on_disconnect)

    await node.open()
    try:
        if duration is None:
            await done.wait()
        else:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(done.wait(), timeout=duration)
    finally:
        await node.close()

    summary = {"stats": node.stats, "metrics": node.metrics.snapshot()}
    logger.info("probe finished", extra=summary)
    return summary


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.user_id:
        parser.error("--user-id (or LAVALINK_USER_ID) is required")

    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO, json_output=args.json_logs
    )
    node = NodeConnection(options_from_args(args))
    try:
        asyncio.run(probe(node, duration=args.duration))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover - manual entry point
    raise SystemExit(main())
