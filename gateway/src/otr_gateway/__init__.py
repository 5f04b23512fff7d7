"""Recipient reconciliation and OTR fan-out for conversation devices."""

from .config import GatewayConfig
from .conversations import Conversation, ConversationStore, LimitExceeded, MembershipView, RosterSnapshot
from .devices import Device, DeviceRegistry
from .errors import ConfigurationError, EventConstructionError, IncompleteRecipientsError
from .fanout import CallbackEventBuilder, DeliveryResult, EventBuilder, FanoutEventBuilder, OtrEventBuilder
from .hub import Subscription, SubscriptionHub
from .log import ConversationLog, OtrMessageEvent
from .matcher import ClientMismatch, RecipientMatcher
from .recipients import RecipientMap

__all__ = [
    "GatewayConfig",
    "Conversation",
    "ConversationStore",
    "LimitExceeded",
    "MembershipView",
    "RosterSnapshot",
    "Device",
    "DeviceRegistry",
    "ConfigurationError",
    "EventConstructionError",
    "IncompleteRecipientsError",
    "CallbackEventBuilder",
    "DeliveryResult",
    "EventBuilder",
    "FanoutEventBuilder",
    "OtrEventBuilder",
    "Subscription",
    "SubscriptionHub",
    "ConversationLog",
    "OtrMessageEvent",
    "ClientMismatch",
    "RecipientMatcher",
    "RecipientMap",
]
