from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .matcher import ClientMismatch


class ConfigurationError(Exception):
    """Raised when a conversation or sender reference cannot be resolved."""


class IncompleteRecipientsError(Exception):
    """Raised in strict mode when the addressed recipients do not match the roster.

    The attached mismatch carries the ``missing``/``redundant``/``deleted`` maps
    so the sender can re-address and retry.
    """

    def __init__(self, mismatch: "ClientMismatch") -> None:
        super().__init__("recipients do not match conversation devices")
        self.mismatch = mismatch

    @property
    def missing(self):
        return self.mismatch.missing

    @property
    def redundant(self):
        return self.mismatch.redundant

    @property
    def deleted(self):
        return self.mismatch.deleted


class EventConstructionError(Exception):
    """Raised when an event builder returns no event for a valid recipient."""

    def __init__(self, user_id: str, client_id: str) -> None:
        super().__init__(f"event builder returned no event for {user_id}/{client_id}")
        self.user_id = user_id
        self.client_id = client_id
