from __future__ import annotations

import logging
import threading
import time
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Set

from .config import MAX_MEMBERS_PER_CONV
from .devices import DeviceRegistry
from .errors import ConfigurationError
from .log import ConversationLog


logger = logging.getLogger(__name__)


class LimitExceeded(Exception):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Conversation:
    conv_id: str
    creator_user_id: str
    created_at_ms: int
    members: Set[str] = field(default_factory=set)
    log: ConversationLog = field(init=False)

    def __post_init__(self) -> None:
        self.log = ConversationLog(self.conv_id)


@dataclass(frozen=True)
class RosterSnapshot:
    """Members and their active devices, frozen at one instant."""

    conv_id: str
    members: FrozenSet[str]
    devices: Mapping[str, FrozenSet[str]]

    def active_devices(self, user_id: str) -> FrozenSet[str]:
        return self.devices.get(user_id, frozenset())


class MembershipView:
    """Read-only view over a conversation's roster and its members' devices."""

    def __init__(self, registry: DeviceRegistry, conversation: Conversation) -> None:
        self._registry = registry
        self._conversation = conversation

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    def members(self) -> FrozenSet[str]:
        return frozenset(self._conversation.members)

    def active_devices(self, user_id: str) -> FrozenSet[str]:
        return self._registry.active_devices(user_id)

    def snapshot(self, extra_users: Iterable[str] = ()) -> RosterSnapshot:
        """Freeze membership plus the devices of members and ``extra_users``.

        Non-members are included so that their addressed devices can be
        checked against their account as well.
        """

        members = self.members()
        users = set(members) | set(extra_users)
        devices = MappingProxyType({user_id: self._registry.active_devices(user_id) for user_id in users})
        return RosterSnapshot(conv_id=self._conversation.conv_id, members=members, devices=devices)


class ConversationStore:
    def __init__(self, max_members: int = MAX_MEMBERS_PER_CONV) -> None:
        self._lock = threading.Lock()
        self._max_members = max_members
        self._conversations: Dict[str, Conversation] = {}

    def create(self, conv_id: str, creator_user_id: str, members: Iterable[str] = ()) -> Conversation:
        member_set = set(members)
        member_set.add(creator_user_id)
        if len(member_set) > self._max_members:
            raise LimitExceeded("too many members")
        with self._lock:
            if conv_id in self._conversations:
                raise ValueError("conversation already exists")
            conversation = Conversation(
                conv_id=conv_id,
                creator_user_id=creator_user_id,
                created_at_ms=_now_ms(),
                members=member_set,
            )
            self._conversations[conv_id] = conversation
        logger.info("created conversation %s with %d members", conv_id, len(member_set))
        return conversation

    def add_members(self, conv_id: str, members: Iterable[str]) -> FrozenSet[str]:
        conversation = self.require(conv_id)
        with self._lock:
            new_members = set(members) - conversation.members
            if len(conversation.members) + len(new_members) > self._max_members:
                raise LimitExceeded("too many members")
            conversation.members = conversation.members | new_members
        return frozenset(new_members)

    def remove_members(self, conv_id: str, members: Iterable[str]) -> FrozenSet[str]:
        conversation = self.require(conv_id)
        with self._lock:
            removed = (set(members) & conversation.members) - {conversation.creator_user_id}
            # Replaced rather than mutated so concurrent snapshots see a stable set.
            conversation.members = conversation.members - removed
        return frozenset(removed)

    def get(self, conv_id: str) -> Conversation | None:
        return self._conversations.get(conv_id)

    def require(self, conv_id: str) -> Conversation:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            raise ConfigurationError("unknown conversation")
        return conversation

    def is_member(self, conv_id: str, user_id: str) -> bool:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            return False
        return user_id in conversation.members

    def members(self, conv_id: str) -> FrozenSet[str]:
        return frozenset(self.require(conv_id).members)
