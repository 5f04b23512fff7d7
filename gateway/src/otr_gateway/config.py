from __future__ import annotations

from dataclasses import dataclass


MAX_MEMBERS_PER_CONV = 1024


@dataclass
class GatewayConfig:
    # Sender's other devices must receive a copy of every message.
    self_sync: bool = True
    # Strict by default: any mismatch aborts the send.
    ignore_missing: bool = False
    max_members_per_conv: int = MAX_MEMBERS_PER_CONV
