# risk_manager.py
"""
Pre-trade gates used by the controller:
- RateLimitWindow: at most N execution attempts in a trailing window
- EmergencyStop: file flag or programmatic trigger, terminal for the session
- RiskManager: trade-size policy plus the two gates above
"""

import os
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from config.logging_config import get_logger
from data_models import Opportunity


class RateLimitWindow:
    def __init__(self, max_per_window: int, window_s: float = 3600.0, clock: Callable[[], float] = time.time):
        if max_per_window < 0:
            raise ValueError("max_per_window must be non-negative")
        self.max_per_window = int(max_per_window)
        self.window_s = float(window_s)
        self.clock = clock
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        # Timestamps are appended in order, so the oldest sit on the left.
        while self._timestamps and now - self._timestamps[0] >= self.window_s:
            self._timestamps.popleft()

    def allows(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        self._prune(now)
        return len(self._timestamps) < self.max_per_window

    def record(self, when: Optional[float] = None) -> None:
        self._timestamps.append(self.clock() if when is None else when)

    def count(self, now: Optional[float] = None) -> int:
        self._prune(self.clock() if now is None else now)
        return len(self._timestamps)

    def reset(self) -> None:
        self._timestamps.clear()


class EmergencyStop:
    """Active when the flag file exists or ``trigger()`` was called."""

    def __init__(self, path: Optional[str] = "EMERGENCY_STOP"):
        self.path = path
        self.reason: Optional[str] = None
        self._triggered = False
        self.logger = get_logger(__name__)

    def trigger(self, reason: str = "manual trigger") -> None:
        if not self._triggered:
            self.logger.critical(f"EMERGENCY STOP triggered: {reason}")
        self._triggered = True
        self.reason = reason

    def is_active(self) -> bool:
        if self._triggered:
            return True
        if self.path and os.path.exists(self.path):
            self.trigger(f"flag file '{self.path}' present")
            return True
        return False

    def clear(self) -> None:
        """Resets the programmatic trigger. The flag file must be removed by the operator."""
        self._triggered = False
        self.reason = None


class RiskManager:
    def __init__(self, config: Dict[str, Any], clock: Callable[[], float] = time.time):
        self.config = config or {}
        params = self.config.get("trading_parameters", {}) or {}
        self.logger = get_logger(__name__)

        self.max_trade_amount = int(params.get("max_trade_amount", 10_000_000))
        self.rate_limit = RateLimitWindow(
            max_per_window=int(params.get("max_executions_per_hour", 10)),
            window_s=float(params.get("rate_limit_window_s", 3600)),
            clock=clock,
        )
        self.emergency_stop = EmergencyStop(params.get("emergency_stop_file", "EMERGENCY_STOP"))

    def check_trade_size(self, opportunity: Opportunity) -> bool:
        if opportunity.trade_amount_in > self.max_trade_amount:
            self.logger.warning(
                f"TRADE SIZE LIMIT: {opportunity.pair} amount {opportunity.trade_amount_in} "
                f"exceeds max {self.max_trade_amount}."
            )
            return False
        return True

    def check_rate_limit(self) -> bool:
        if not self.rate_limit.allows():
            self.logger.warning(
                f"RATE LIMIT: {self.rate_limit.max_per_window} executions already attempted "
                f"in the last {self.rate_limit.window_s / 60:.0f} minutes."
            )
            return False
        return True

    def record_execution(self) -> None:
        self.rate_limit.record()

    def check_emergency_stop(self) -> bool:
        return self.emergency_stop.is_active()

    def update_limits(self, params: Dict[str, Any]) -> None:
        if "max_trade_amount" in params:
            self.max_trade_amount = int(params["max_trade_amount"])
        if "max_executions_per_hour" in params:
            self.rate_limit.max_per_window = int(params["max_executions_per_hour"])
        self.logger.info(f"Risk limits updated: max_trade_amount={self.max_trade_amount}, "
                         f"max_executions_per_hour={self.rate_limit.max_per_window}")

    def get_status(self) -> Dict[str, Any]:
        return {
            'max_trade_amount': self.max_trade_amount,
            'max_executions_per_hour': self.rate_limit.max_per_window,
            'executions_in_window': self.rate_limit.count(),
            'emergency_stop_active': self.emergency_stop.is_active(),
        }
