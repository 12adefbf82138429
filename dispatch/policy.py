"""
Purpose: Central configuration for order routing.
What it does:

Stores the two kinds of tunables the routing engine reads:

- RoutingConfig: the externally editable dispatch strategy
  (mode = round-robin | broadcast, broadcast_count = fan-out size).
  Process-wide and read on every decision; only the mode is snapshotted per order.

- DispatchPolicy: fixed timing knobs
  RESPONSE_WINDOW_SECONDS = 300
  SWEEP_INTERVAL_SECONDS = 1

Rule: No routing logic here, just parameters and the sources that serve them.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

from orders.models import RoutingMode


@dataclass(frozen=True)
class RoutingConfig:
    """
    The live routing strategy, as edited by an administrator.
    """
    mode: RoutingMode = RoutingMode.ROUND_ROBIN

    # How many pharmacies a broadcast order invites at once.
    broadcast_count: int = 3

    def validate(self) -> None:
        if not isinstance(self.mode, RoutingMode):
            raise ValueError(f"Unknown routing mode: {self.mode!r}")

        if isinstance(self.broadcast_count, bool) or not isinstance(self.broadcast_count, int):
            raise ValueError(f"broadcast_count must be an integer, got {self.broadcast_count!r}")

        if self.broadcast_count < 1:
            raise ValueError("broadcast_count must be >= 1")


@dataclass(frozen=True)
class DispatchPolicy:
    """
    Timing and retry thresholds for dispatch, reassignment and the deadline sweep.
    """

    # --- Response window ---
    # How long the current target(s) have to answer before silence counts as refusal.
    response_window_seconds: int = 300

    # --- Deadline sweep ---
    # Must stay far below the response window: it bounds reassignment latency.
    sweep_interval_seconds: float = 1.0

    # --- Optimistic concurrency ---
    # Read-compare-write attempts before giving up on a contended order.
    max_commit_attempts: int = 5

    # --- Quote defaults ---
    default_delivery_fee: float = 500
    default_estimated_time_minutes: int = 15

    @property
    def response_window(self) -> timedelta:
        return timedelta(seconds=self.response_window_seconds)

    def validate(self) -> None:
        if self.response_window_seconds <= 0:
            raise ValueError("response_window_seconds must be > 0")

        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")

        if self.sweep_interval_seconds >= self.response_window_seconds:
            raise ValueError("sweep_interval_seconds must be smaller than the response window")

        if self.max_commit_attempts < 1:
            raise ValueError("max_commit_attempts must be >= 1")

        if self.default_delivery_fee < 0:
            raise ValueError("default_delivery_fee must be >= 0")


def default_routing_config() -> RoutingConfig:
    c = RoutingConfig()
    c.validate()
    return c


def default_dispatch_policy() -> DispatchPolicy:
    """
    Convenience factory for the default policy.
    """
    p = DispatchPolicy()
    p.validate()
    return p


def routing_config_from_env() -> RoutingConfig:
    """
    Example in .env:
    ROUTING_MODE=broadcast
    ROUTING_BROADCAST_COUNT=2
    """
    load_dotenv()
    c = RoutingConfig(
        mode=RoutingMode(os.getenv("ROUTING_MODE", RoutingMode.ROUND_ROBIN.value)),
        broadcast_count=int(os.getenv("ROUTING_BROADCAST_COUNT", "3")),
    )
    c.validate()
    return c


def dispatch_policy_from_env() -> DispatchPolicy:
    load_dotenv()
    defaults = DispatchPolicy()
    p = DispatchPolicy(
        response_window_seconds=int(
            os.getenv("RESPONSE_WINDOW_SECONDS", defaults.response_window_seconds)
        ),
        sweep_interval_seconds=float(
            os.getenv("SWEEP_INTERVAL_SECONDS", defaults.sweep_interval_seconds)
        ),
        max_commit_attempts=int(os.getenv("MAX_COMMIT_ATTEMPTS", defaults.max_commit_attempts)),
    )
    p.validate()
    return p


class RoutingConfigSource(ABC):
    """
    Where the engine reads the current RoutingConfig from, at every decision point.
    """

    @abstractmethod
    def current(self) -> RoutingConfig:
        pass


class InMemoryRoutingConfigSource(RoutingConfigSource):
    """
    Process-local config holder, editable at runtime (the admin toggle).
    """

    def __init__(self, config: Optional[RoutingConfig] = None):
        self._lock = threading.Lock()
        self._config = config or default_routing_config()
        self._config.validate()

    def current(self) -> RoutingConfig:
        with self._lock:
            return self._config

    def update(
        self,
        *,
        mode: Optional[RoutingMode] = None,
        broadcast_count: Optional[int] = None,
    ) -> RoutingConfig:
        with self._lock:
            config = self._config
            if mode is not None:
                config = replace(config, mode=RoutingMode(mode))
            if broadcast_count is not None:
                config = replace(config, broadcast_count=broadcast_count)
            config.validate()
            self._config = config
            return config
