from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from . import recipients as rmap
from .config import GatewayConfig
from .conversations import Conversation, MembershipView, RosterSnapshot
from .devices import Device, DeviceRegistry
from .errors import ConfigurationError
from .recipients import RecipientMap


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientMismatch:
    """Outcome of reconciling addressed recipients against a roster snapshot.

    ``missing`` holds required devices that were not addressed, ``redundant``
    holds addressed devices that are not active devices of a member, and
    ``deleted`` is the part of ``redundant`` the registry knows as removed.
    ``valid`` is the addressed part of the required set, i.e. the devices that
    receive the message. It is never narrowed by a per-user filter, so
    delivery still reaches every valid device.
    """

    missing: RecipientMap = field(default_factory=dict)
    redundant: RecipientMap = field(default_factory=dict)
    deleted: RecipientMap = field(default_factory=dict)
    valid: RecipientMap = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.missing and not self.redundant

    def to_payload(self) -> dict[str, Any]:
        return {
            "missing": rmap.to_json(self.missing),
            "redundant": rmap.to_json(self.redundant),
            "deleted": rmap.to_json(self.deleted),
        }

    def only_for(self, user_id: str) -> "ClientMismatch":
        def pick(source: RecipientMap) -> RecipientMap:
            return {user_id: source[user_id]} if user_id in source else {}

        return ClientMismatch(
            missing=pick(self.missing),
            redundant=pick(self.redundant),
            deleted=pick(self.deleted),
            valid=self.valid,
        )


class RecipientMatcher:
    """Classifies addressed clients into missing, redundant and valid sets."""

    def __init__(self, registry: DeviceRegistry, config: GatewayConfig | None = None) -> None:
        self.registry = registry
        self.config = config or GatewayConfig()

    def resolve_sender(self, sender: Device | str | None) -> Device:
        if sender is None:
            raise ConfigurationError("sender required")
        if isinstance(sender, Device):
            return sender
        device = self.registry.get(sender)
        if device is None:
            raise ConfigurationError("unknown sender client")
        return device

    def classify(
        self,
        recipients: Mapping[str, Iterable[str]] | None,
        conversation: Conversation | None,
        sender: Device | str | None,
        only_for_user: str | None = None,
    ) -> ClientMismatch:
        if conversation is None:
            raise ConfigurationError("conversation required")
        device = self.resolve_sender(sender)
        if not device.is_valid:
            raise ConfigurationError("sender client was removed")

        addressed = rmap.normalize(recipients)
        snapshot = MembershipView(self.registry, conversation).snapshot(extra_users=addressed.keys())
        if not snapshot.members:
            raise ConfigurationError("conversation has no members")
        if device.user_id not in snapshot.members:
            raise ConfigurationError("sender not a member")

        mismatch = self._classify_snapshot(addressed, snapshot, device)
        if only_for_user is not None:
            mismatch = mismatch.only_for(only_for_user)
        logger.debug(
            "classified %s from %s: missing=%d redundant=%d valid=%d",
            conversation.conv_id,
            device.client_id,
            rmap.count(mismatch.missing),
            rmap.count(mismatch.redundant),
            rmap.count(mismatch.valid),
        )
        return mismatch

    def _classify_snapshot(self, addressed: RecipientMap, snapshot: RosterSnapshot, sender: Device) -> ClientMismatch:
        missing: RecipientMap = {}
        redundant: RecipientMap = {}
        deleted: RecipientMap = {}
        valid: RecipientMap = {}

        required_by_user = {
            user_id: self._required_devices(snapshot, user_id, sender) for user_id in snapshot.members
        }
        for user_id, required in required_by_user.items():
            absent = required - addressed.get(user_id, frozenset())
            if absent:
                missing[user_id] = absent

        for user_id, clients in addressed.items():
            # Non-members own no valid recipients; every addressed device is redundant.
            active = snapshot.active_devices(user_id) if user_id in snapshot.members else frozenset()
            extra = clients - active
            if extra:
                redundant[user_id] = extra
                removed = frozenset(
                    client_id
                    for client_id in extra
                    if self.registry.owner(client_id) == user_id and not self.registry.is_active(client_id)
                )
                if removed:
                    deleted[user_id] = removed
            accepted = clients & required_by_user.get(user_id, frozenset())
            if accepted:
                valid[user_id] = accepted

        return ClientMismatch(missing=missing, redundant=redundant, deleted=deleted, valid=valid)

    def _required_devices(self, snapshot: RosterSnapshot, user_id: str, sender: Device) -> frozenset:
        if user_id != sender.user_id:
            return snapshot.active_devices(user_id)
        if not self.config.self_sync:
            return frozenset()
        return snapshot.active_devices(user_id) - {sender.client_id}
