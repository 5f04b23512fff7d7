"""In-process mock backend routes for clients, conversations and OTR messages."""

from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from .config import GatewayConfig
from .conversations import ConversationStore, LimitExceeded
from .devices import DeviceRegistry
from .errors import ConfigurationError, IncompleteRecipientsError
from .fanout import FanoutEventBuilder
from .hub import SubscriptionHub
from .recipients import parse_otr_recipients


logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        registry: DeviceRegistry,
        conversations: ConversationStore,
        hub: SubscriptionHub,
    ) -> None:
        self.config = config
        self.registry = registry
        self.conversations = conversations
        self.hub = hub
        self.fanout = FanoutEventBuilder(registry, config, hub=hub)


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _parse_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValueError("flag must be true or false")


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValueError("malformed json") from None
    if not isinstance(body, dict):
        raise ValueError("json object required")
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_client_register(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = request.match_info["user_id"]
    try:
        body = await _json_body(request)
    except ValueError as exc:
        return _invalid_request(str(exc))

    client_id = body.get("client_id")
    label = body.get("label")
    prekeys = body.get("prekeys") or []
    if client_id is not None and not isinstance(client_id, str):
        return _invalid_request("client_id must be a string")
    if label is not None and not isinstance(label, str):
        return _invalid_request("label must be a string")
    if not isinstance(prekeys, list) or any(not isinstance(key, str) for key in prekeys):
        return _invalid_request("prekeys must be a list of strings")
    try:
        device = runtime.registry.register(user_id, client_id, label=label, prekeys=prekeys)
    except ValueError as exc:
        return _error("client_exists", str(exc), 409)
    return web.json_response({"id": device.client_id, "label": device.label}, status=201)


async def handle_client_remove(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = request.match_info["user_id"]
    client_id = request.match_info["client_id"]
    if runtime.registry.owner(client_id) != user_id:
        return _not_found("unknown client")
    runtime.registry.remove(client_id)
    return web.json_response({"status": "ok"})


async def handle_client_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = request.match_info["user_id"]
    clients = [
        {"id": device.client_id, "label": device.label}
        for device in sorted(runtime.registry.devices(user_id), key=lambda device: device.client_id)
    ]
    return web.json_response({"clients": clients})


async def handle_conversation_create(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _json_body(request)
    except ValueError as exc:
        return _invalid_request(str(exc))

    conv_id = body.get("conv_id")
    creator = body.get("creator")
    members = body.get("members") or []
    if not isinstance(conv_id, str) or not isinstance(creator, str):
        return _invalid_request("conv_id and creator required")
    if not isinstance(members, list) or any(not isinstance(member, str) for member in members):
        return _invalid_request("members must be a list of user_ids")
    try:
        conversation = runtime.conversations.create(conv_id, creator, members)
    except LimitExceeded as exc:
        return _error("limit_exceeded", str(exc), 429)
    except ValueError as exc:
        return _error("conversation_exists", str(exc), 409)
    return web.json_response(
        {"conv_id": conversation.conv_id, "members": sorted(conversation.members)}, status=201
    )


async def handle_members_add(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conv_id = request.match_info["conv_id"]
    try:
        body = await _json_body(request)
    except ValueError as exc:
        return _invalid_request(str(exc))

    members = body.get("members")
    if not isinstance(members, list) or any(not isinstance(member, str) for member in members):
        return _invalid_request("members must be a list of user_ids")
    try:
        added = runtime.conversations.add_members(conv_id, members)
    except ConfigurationError as exc:
        return _not_found(str(exc))
    except LimitExceeded as exc:
        return _error("limit_exceeded", str(exc), 429)
    return web.json_response({"added": sorted(added)})


async def handle_member_remove(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conv_id = request.match_info["conv_id"]
    user_id = request.match_info["user_id"]
    try:
        removed = runtime.conversations.remove_members(conv_id, [user_id])
    except ConfigurationError as exc:
        return _not_found(str(exc))
    return web.json_response({"removed": sorted(removed)})


async def handle_otr_message(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conv_id = request.match_info["conv_id"]
    conversation = runtime.conversations.get(conv_id)
    if conversation is None:
        return _not_found("unknown conversation")
    try:
        ignore_missing = _parse_flag(request.query.get("ignore_missing"))
        body = await _json_body(request)
        payloads = parse_otr_recipients(body.get("recipients", {}))
    except ValueError as exc:
        return _invalid_request(str(exc))

    sender = body.get("sender")
    if not isinstance(sender, str):
        return _invalid_request("sender required")
    if runtime.registry.get(sender) is None:
        return _error("unknown_client", "unknown sender client", 403)
    try:
        result = runtime.fanout.deliver_otr(
            conversation,
            payloads,
            sender,
            ignore_missing=ignore_missing,
            only_for_user=request.query.get("report_missing"),
        )
    except IncompleteRecipientsError as exc:
        return web.json_response(exc.mismatch.to_payload(), status=412)
    except ConfigurationError as exc:
        return _error("forbidden", str(exc), 403)

    payload = result.mismatch.to_payload()
    payload["time_ms"] = result.ts_ms
    payload["id"] = result.msg_id
    payload["delivered"] = len(result.events)
    return web.json_response(payload, status=201)


async def handle_events(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conversation = runtime.conversations.get(request.match_info["conv_id"])
    if conversation is None:
        return _not_found("unknown conversation")
    try:
        after_seq = int(request.query.get("after_seq", "0"))
        limit_raw = request.query.get("limit")
        limit = int(limit_raw) if limit_raw is not None else None
        events = conversation.log.list_since(after_seq, limit)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response({"events": [event.to_payload() for event in events]})


def create_app(
    config: GatewayConfig | None = None,
    *,
    registry: DeviceRegistry | None = None,
    conversations: ConversationStore | None = None,
    hub: SubscriptionHub | None = None,
) -> web.Application:
    config = config or GatewayConfig()
    runtime = Runtime(
        config=config,
        registry=registry or DeviceRegistry(),
        conversations=conversations or ConversationStore(config.max_members_per_conv),
        hub=hub or SubscriptionHub(),
    )
    app = web.Application()
    app["runtime"] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/users/{user_id}/clients", handle_client_register)
    app.router.add_get("/v1/users/{user_id}/clients", handle_client_list)
    app.router.add_delete("/v1/users/{user_id}/clients/{client_id}", handle_client_remove)
    app.router.add_post("/v1/conversations", handle_conversation_create)
    app.router.add_post("/v1/conversations/{conv_id}/members", handle_members_add)
    app.router.add_delete("/v1/conversations/{conv_id}/members/{user_id}", handle_member_remove)
    app.router.add_post("/v1/conversations/{conv_id}/otr/messages", handle_otr_message)
    app.router.add_get("/v1/conversations/{conv_id}/events", handle_events)
    logger.debug("created gateway app self_sync=%s ignore_missing=%s", config.self_sync, config.ignore_missing)
    return app
