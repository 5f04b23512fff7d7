from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_client_id() -> str:
    return secrets.token_hex(8)


@dataclass
class Device:
    user_id: str
    client_id: str
    label: str | None
    prekeys: List[str] = field(default_factory=list)
    registered_ms: int = 0
    removed_ms: int | None = None

    @property
    def is_valid(self) -> bool:
        return self.removed_ms is None


class DeviceRegistry:
    """Holds every device ever registered, keyed by client id.

    Removal is soft: a removed device keeps its record so that later
    classification can tell a deleted client apart from one it never saw.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: Dict[str, Device] = {}
        self._by_user: Dict[str, List[str]] = {}

    def register(
        self,
        user_id: str,
        client_id: str | None = None,
        *,
        label: str | None = None,
        prekeys: Iterable[str] | None = None,
    ) -> Device:
        if not user_id:
            raise ValueError("user_id required")
        with self._lock:
            if client_id is None:
                client_id = new_client_id()
                while client_id in self._devices:
                    client_id = new_client_id()
            elif client_id in self._devices:
                raise ValueError("client already registered")
            device = Device(
                user_id=user_id,
                client_id=client_id,
                label=label,
                prekeys=list(prekeys or []),
                registered_ms=_now_ms(),
            )
            self._devices[client_id] = device
            self._by_user.setdefault(user_id, []).append(client_id)
        logger.info("registered client %s for user %s", client_id, user_id)
        return device

    def remove(self, client_id: str) -> Device:
        with self._lock:
            device = self._devices.get(client_id)
            if device is None:
                raise KeyError(client_id)
            if device.removed_ms is None:
                device.removed_ms = _now_ms()
                logger.info("removed client %s of user %s", client_id, device.user_id)
        return device

    def get(self, client_id: str) -> Device | None:
        with self._lock:
            return self._devices.get(client_id)

    def owner(self, client_id: str) -> str | None:
        device = self.get(client_id)
        if device is None:
            return None
        return device.user_id

    def is_active(self, client_id: str) -> bool:
        device = self.get(client_id)
        return device is not None and device.is_valid

    def devices(self, user_id: str, include_removed: bool = False) -> List[Device]:
        with self._lock:
            devices = [self._devices[client_id] for client_id in self._by_user.get(user_id, [])]
        if include_removed:
            return devices
        return [device for device in devices if device.is_valid]

    def active_devices(self, user_id: str) -> FrozenSet[str]:
        return frozenset(device.client_id for device in self.devices(user_id))

    def removed_devices(self, user_id: str) -> FrozenSet[str]:
        return frozenset(
            device.client_id
            for device in self.devices(user_id, include_removed=True)
            if not device.is_valid
        )
