"""Addressed-recipient maps and the wire shapes they arrive in."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Iterable, Mapping, Tuple


RecipientMap = Dict[str, FrozenSet[str]]
# user_id -> client_id -> opaque per-device payload
AddressedPayloads = Mapping[str, Mapping[str, Any]]


def normalize(recipients: Mapping[str, Iterable[str]] | None) -> RecipientMap:
    """Return a user -> frozenset(client) map; ``None`` addresses no one."""

    if not recipients:
        return {}
    return {user_id: frozenset(clients) for user_id, clients in recipients.items()}


def from_payloads(payloads: AddressedPayloads | None) -> RecipientMap:
    if not payloads:
        return {}
    return {user_id: frozenset(by_client.keys()) for user_id, by_client in payloads.items()}


def to_json(recipients: Mapping[str, Iterable[str]]) -> dict[str, list[str]]:
    return {user_id: sorted(clients) for user_id, clients in sorted(recipients.items())}


def count(recipients: Mapping[str, Iterable[str]]) -> int:
    return sum(len(frozenset(clients)) for clients in recipients.values())


def parse_otr_recipients(raw: Any) -> Dict[str, Dict[str, str]]:
    """Parse the ``recipients`` field of an OTR message request.

    Two shapes are accepted and collapsed into ``{user: {client: text}}``:
    the JSON object form ``{"u1": {"c1": "b64"}}`` and the entry list form
    ``[{"user": "u1", "clients": [{"client": "c1", "text": "b64"}]}]``.
    """

    if isinstance(raw, dict):
        parsed: Dict[str, Dict[str, str]] = {}
        for user_id, clients in raw.items():
            if not isinstance(user_id, str) or not isinstance(clients, dict):
                raise ValueError("recipients must map user ids to client maps")
            for client_id, text in clients.items():
                if not isinstance(client_id, str) or not isinstance(text, str):
                    raise ValueError("client entries must map client ids to strings")
            parsed[user_id] = dict(clients)
        return parsed
    if isinstance(raw, list):
        parsed = {}
        for entry in raw:
            user_id, clients = _parse_entry(entry)
            parsed.setdefault(user_id, {}).update(clients)
        return parsed
    raise ValueError("recipients must be an object or a list")


def _parse_entry(entry: Any) -> Tuple[str, Dict[str, str]]:
    if not isinstance(entry, dict):
        raise ValueError("recipient entry must be an object")
    user_id = entry.get("user")
    clients = entry.get("clients")
    if not isinstance(user_id, str) or not isinstance(clients, list):
        raise ValueError("recipient entry requires user and clients")
    parsed: Dict[str, str] = {}
    for client in clients:
        if not isinstance(client, dict):
            raise ValueError("client entry must be an object")
        client_id = client.get("client")
        text = client.get("text")
        if not isinstance(client_id, str) or not isinstance(text, str):
            raise ValueError("client entry requires client and text")
        parsed[client_id] = text
    return user_id, parsed
