from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Protocol, runtime_checkable

from . import recipients as rmap
from .config import GatewayConfig
from .conversations import Conversation
from .devices import Device, DeviceRegistry
from .errors import ConfigurationError, EventConstructionError, IncompleteRecipientsError
from .hub import SubscriptionHub
from .log import OtrMessageEvent, to_b64
from .matcher import ClientMismatch, RecipientMatcher
from .recipients import AddressedPayloads


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@runtime_checkable
class EventBuilder(Protocol):
    def build(self, recipient: Device, payload: Any) -> Any:
        ...


class CallbackEventBuilder:
    """Adapts a plain ``(device, payload) -> event`` callable to ``EventBuilder``."""

    def __init__(self, callback: Callable[[Device, Any], Any]) -> None:
        self._callback = callback

    def build(self, recipient: Device, payload: Any) -> Any:
        return self._callback(recipient, payload)


@dataclass
class OtrEventBuilder:
    """Builds ``conversation.otr-message-add`` events for one sent message."""

    conv_id: str
    msg_id: str
    sender: Device
    ts_ms: int

    def build(self, recipient: Device, payload: Any) -> OtrMessageEvent:
        return OtrMessageEvent(
            conv_id=self.conv_id,
            msg_id=self.msg_id,
            sender_user_id=self.sender.user_id,
            sender_client_id=self.sender.client_id,
            recipient_user_id=recipient.user_id,
            recipient_client_id=recipient.client_id,
            data_b64=to_b64(payload),
            ts_ms=self.ts_ms,
        )


@dataclass
class DeliveryResult:
    events: List[Any]
    mismatch: ClientMismatch
    msg_id: str | None = None
    ts_ms: int | None = None
    pushed: int = field(default=0)


class FanoutEventBuilder:
    """Turns one addressed message into one logged event per valid recipient device."""

    def __init__(
        self,
        registry: DeviceRegistry,
        config: GatewayConfig | None = None,
        *,
        hub: SubscriptionHub | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or GatewayConfig()
        self.matcher = RecipientMatcher(registry, self.config)
        self.hub = hub
        self.last_mismatch: ClientMismatch | None = None

    def deliver(
        self,
        conversation: Conversation | None,
        recipients: AddressedPayloads | None,
        sender: Device | str | None,
        builder: EventBuilder | Callable[[Device, Any], Any],
        *,
        ignore_missing: bool | None = None,
        only_for_user: str | None = None,
    ) -> DeliveryResult:
        """Classify ``recipients`` and append one event per valid device.

        Devices are visited in ascending (user id, client id) order. In strict
        mode a non-empty mismatch raises ``IncompleteRecipientsError`` before
        anything is appended. A builder returning ``None`` raises
        ``EventConstructionError``; events appended earlier in the same call
        are kept.
        """

        if conversation is None:
            raise ConfigurationError("conversation required")
        if builder is None:
            raise ConfigurationError("event builder required")
        if not isinstance(builder, EventBuilder):
            builder = CallbackEventBuilder(builder)
        if ignore_missing is None:
            ignore_missing = self.config.ignore_missing
        payloads = recipients or {}
        device = self.matcher.resolve_sender(sender)

        with conversation.log.lock:
            mismatch = self.matcher.classify(
                rmap.from_payloads(payloads), conversation, device, only_for_user=only_for_user
            )
            self.last_mismatch = mismatch
            if not mismatch.is_empty and not ignore_missing:
                logger.warning(
                    "rejected send to %s from %s: missing=%d redundant=%d",
                    conversation.conv_id,
                    device.client_id,
                    rmap.count(mismatch.missing),
                    rmap.count(mismatch.redundant),
                )
                raise IncompleteRecipientsError(mismatch)

            result = DeliveryResult(events=[], mismatch=mismatch)
            for user_id in sorted(mismatch.valid):
                for client_id in sorted(mismatch.valid[user_id]):
                    recipient = self.registry.get(client_id)
                    event = builder.build(recipient, payloads[user_id][client_id])
                    if event is None:
                        raise EventConstructionError(user_id, client_id)
                    stored, created = conversation.log.append(event)
                    if not created:
                        continue
                    result.events.append(stored)
                    if self.hub is not None:
                        result.pushed += self.hub.deliver(stored)

        logger.info(
            "delivered %d events to %s from %s", len(result.events), conversation.conv_id, device.client_id
        )
        return result

    def deliver_otr(
        self,
        conversation: Conversation | None,
        recipients: AddressedPayloads | None,
        sender: Device | str | None,
        *,
        msg_id: str | None = None,
        ts_ms: int | None = None,
        ignore_missing: bool | None = None,
        only_for_user: str | None = None,
    ) -> DeliveryResult:
        if conversation is None:
            raise ConfigurationError("conversation required")
        device = self.matcher.resolve_sender(sender)
        msg_id = msg_id or str(uuid.uuid4())
        ts_ms = _now_ms() if ts_ms is None else ts_ms
        builder = OtrEventBuilder(conv_id=conversation.conv_id, msg_id=msg_id, sender=device, ts_ms=ts_ms)
        result = self.deliver(
            conversation,
            recipients,
            device,
            builder,
            ignore_missing=ignore_missing,
            only_for_user=only_for_user,
        )
        result.msg_id = msg_id
        result.ts_ms = ts_ms
        return result
