"""Gateway CLI: frame simulation and the aiohttp mock backend."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .config import GatewayConfig
from .conversations import ConversationStore
from .devices import DeviceRegistry
from .errors import IncompleteRecipientsError
from .fanout import FanoutEventBuilder
from .hub import SubscriptionHub
from .http_routes import create_app
from .log import OtrMessageEvent
from .recipients import parse_otr_recipients


def simulate(frames: Iterable[dict], output: TextIO, config: GatewayConfig | None = None) -> None:
    """Run JSON frames through the registry, conversations and fan-out.

    Every event pushed to a subscribed device is written as one JSON line;
    rejected sends are written as ``mismatch`` lines.
    """

    config = config or GatewayConfig()
    registry = DeviceRegistry()
    conversations = ConversationStore(config.max_members_per_conv)
    hub = SubscriptionHub()
    fanout = FanoutEventBuilder(registry, config, hub=hub)

    def write(message: dict) -> None:
        output.write(json.dumps(message, sort_keys=True) + "\n")

    def callback_for(client_id: str):
        def _callback(event: OtrMessageEvent, device: str = client_id) -> None:
            message = {"t": "event", "device_id": device}
            message.update(event.to_payload())
            write(message)

        return _callback

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "client.register":
            registry.register(frame["user_id"], frame.get("client_id"), label=frame.get("label"))
        elif frame_type == "client.remove":
            registry.remove(frame["client_id"])
        elif frame_type == "conv.create":
            conversations.create(frame["conv_id"], frame["creator"], frame.get("members", []))
        elif frame_type == "conv.add":
            conversations.add_members(frame["conv_id"], frame["members"])
        elif frame_type == "conv.remove":
            conversations.remove_members(frame["conv_id"], frame["members"])
        elif frame_type == "device.subscribe":
            hub.subscribe(frame["client_id"], callback_for(frame["client_id"]))
        elif frame_type == "otr.send":
            conversation = conversations.require(frame["conv_id"])
            try:
                fanout.deliver_otr(
                    conversation,
                    parse_otr_recipients(frame.get("recipients", {})),
                    frame["sender"],
                    msg_id=frame.get("msg_id"),
                    ts_ms=frame.get("ts_ms"),
                    ignore_missing=frame.get("ignore_missing"),
                    only_for_user=frame.get("report_missing"),
                )
            except IncompleteRecipientsError as exc:
                message = {"t": "mismatch", "conv_id": conversation.conv_id, "msg_id": frame.get("msg_id")}
                message.update(exc.mismatch.to_payload())
                write(message)
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> list[dict]:
    """Read a stream of JSON values; arrays are flattened into their frames.

    Covers a single array, ndjson and pretty-printed objects back to back.
    """

    content = handle.read()
    decoder = json.JSONDecoder()
    frames: list[dict] = []
    index = 0
    while True:
        while index < len(content) and content[index].isspace():
            index += 1
        if index >= len(content):
            return frames
        value, index = decoder.raw_decode(content, index)
        if isinstance(value, list):
            frames.extend(value)
        else:
            frames.append(value)


def _config_from_args(args: argparse.Namespace) -> GatewayConfig:
    return GatewayConfig(self_sync=not args.no_self_sync, ignore_missing=args.ignore_missing)


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, _config_from_args(args))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")
    app = create_app(_config_from_args(args))
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _add_policy_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-self-sync",
        action="store_true",
        help="Do not require the sender's other devices as recipients",
    )
    parser.add_argument(
        "--ignore-missing",
        action="store_true",
        help="Deliver to valid recipients even when clients are missing or redundant",
    )


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="OTR gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Simulate OTR fan-out frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    _add_policy_flags(simulate_parser)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp mock backend")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--log-level", default="info", help="Logging level")
    _add_policy_flags(serve_parser)

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _run_serve(args)
    return _run_simulation(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
