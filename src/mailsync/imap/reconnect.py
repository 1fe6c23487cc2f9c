"""Reconnect delay policies for sync sessions.

Sessions retry forever; a policy only decides how long to wait before the
next attempt. The constant policy is the default.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Protocol

from ..configuration import ReconnectStrategy, SyncSettings


class ReconnectPolicy(Protocol):
    """Delay schedule applied between reconnect attempts."""

    def next_delay(self, retry_count: int) -> float:
        """Seconds to wait before attempt ``retry_count + 1``."""
        ...


@dataclass(frozen=True)
class ConstantDelayPolicy:
    """Fixed delay between attempts, no ceiling on the number of retries."""

    delay: float = 30.0

    def next_delay(self, retry_count: int) -> float:
        return self.delay


@dataclass(frozen=True)
class ExponentialBackoffPolicy:
    """Exponential backoff with optional jitter, capped at ``max_delay``."""

    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = True

    def next_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** min(max(0, retry_count), 64)), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
            delay = min(delay, self.max_delay)
        return delay


def build_reconnect_policy(settings: SyncSettings) -> ReconnectPolicy:
    if settings.reconnect_strategy is ReconnectStrategy.EXPONENTIAL:
        return ExponentialBackoffPolicy(
            base_delay=settings.retry_delay_seconds,
            max_delay=max(settings.max_retry_delay_seconds, settings.retry_delay_seconds),
        )
    return ConstantDelayPolicy(delay=settings.retry_delay_seconds)


__all__ = [
    "ConstantDelayPolicy",
    "ExponentialBackoffPolicy",
    "ReconnectPolicy",
    "build_reconnect_policy",
]
