#data_models.py

import threading
import time
import uuid
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AssetPair:
    """
    A market ``A/B``: ``asset_a`` is the traded token, ``asset_b`` the quote currency
    capital is held in. Prices are always units of B per unit of A.
    Equality only looks at the two asset ids; decimals are metadata.
    """
    asset_a: str
    asset_b: str
    decimals_a: int = field(default=0, compare=False)
    decimals_b: int = field(default=6, compare=False)

    @property
    def symbol(self) -> str:
        return f"{self.asset_a}/{self.asset_b}"

    def reversed(self) -> "AssetPair":
        return AssetPair(self.asset_b, self.asset_a, self.decimals_b, self.decimals_a)

    def matches(self, other: "AssetPair") -> bool:
        """Direction-agnostic comparison used for pool discovery."""
        return {self.asset_a, self.asset_b} == {other.asset_a, other.asset_b}

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True)
class FeeStructure:
    """Per-venue fees. Fixed fees are in whole quote-currency units."""
    trading_fee_rate: float
    fixed_network_fee: float = 0.0
    fixed_batcher_fee: float = 0.0

    def __post_init__(self):
        if not 0.0 <= self.trading_fee_rate < 1.0:
            raise ValueError(f"trading_fee_rate must be in [0, 1), got {self.trading_fee_rate}")
        if self.fixed_network_fee < 0 or self.fixed_batcher_fee < 0:
            raise ValueError("fixed fees must be non-negative")

    @property
    def fixed_total(self) -> float:
        return self.fixed_network_fee + self.fixed_batcher_fee

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeStructure":
        return cls(
            trading_fee_rate=float(data.get('trading_fee_rate', 0.003)),
            fixed_network_fee=float(data.get('fixed_network_fee', 0.0)),
            fixed_batcher_fee=float(data.get('fixed_batcher_fee', 0.0)),
        )


@dataclass
class PriceQuote:
    """A single venue's view of a pair at ``observed_at``."""
    venue: str
    pair: AssetPair
    price: float
    reserve_a: Optional[float] = None
    reserve_b: Optional[float] = None
    pool_ref: Any = None
    observed_at: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.observed_at


@dataclass(frozen=True)
class Opportunity:
    """A dataclass to hold all information about a detected arbitrage opportunity."""
    pair: AssetPair
    buy_venue: str
    sell_venue: str
    buy_price: float
    sell_price: float
    gross_spread_percent: float
    total_fee_percent: float
    slippage_percent: float
    net_profit_percent: float
    estimated_profit_amount: float
    trade_amount_in: int
    buy_pool_ref: Any = None
    sell_pool_ref: Any = None
    detected_at: float = field(default_factory=time.time)
    opportunity_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['pair'] = self.pair.symbol
        data['buy_pool_ref'] = _ref_for_record(self.buy_pool_ref)
        data['sell_pool_ref'] = _ref_for_record(self.sell_pool_ref)
        return data


class ExecutionMode(str, Enum):
    LIVE = "LIVE"
    DRY_RUN = "DRY_RUN"


class ExecutionState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    BUYING = "BUYING"
    AWAITING_BUY_CONFIRMATION = "AWAITING_BUY_CONFIRMATION"
    SELLING = "SELLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureReason(str, Enum):
    ALREADY_EXECUTING = "ALREADY_EXECUTING"
    INVALID_OPPORTUNITY = "INVALID_OPPORTUNITY"
    BUY_LEG_FAILED = "BUY_LEG_FAILED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    SELL_LEG_FAILED = "SELL_LEG_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


# Outcomes where funds may sit in the target token and need an operator.
UNSAFE_FAILURES = frozenset({FailureReason.CONFIRMATION_TIMEOUT, FailureReason.SELL_LEG_FAILED})


@dataclass(frozen=True)
class TradeLegs:
    buy_tx_ref: Optional[str] = None
    sell_tx_ref: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one execution attempt. Appended to the ledger, never mutated."""
    opportunity: Opportunity
    success: bool
    execution_mode: ExecutionMode
    final_state: ExecutionState
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    actual_profit_amount: float = 0.0
    actual_profit_percent: float = 0.0
    legs: Optional[TradeLegs] = None
    executed_at: float = field(default_factory=time.time)
    duration_ms: int = 0

    @property
    def requires_reconciliation(self) -> bool:
        return self.failure_reason in UNSAFE_FAILURES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'opportunity': self.opportunity.to_dict(),
            'success': self.success,
            'execution_mode': self.execution_mode.value,
            'final_state': self.final_state.value,
            'failure_reason': self.failure_reason.value if self.failure_reason else None,
            'error_message': self.error_message,
            'actual_profit_amount': self.actual_profit_amount,
            'actual_profit_percent': self.actual_profit_percent,
            'legs': asdict(self.legs) if self.legs else None,
            'executed_at': self.executed_at,
            'duration_ms': self.duration_ms,
            'requires_reconciliation': self.requires_reconciliation,
        }


@dataclass(frozen=True)
class SwapReceipt:
    """What a venue reports right after a swap was submitted."""
    tx_ref: str
    amount_out: Optional[int] = None


@dataclass(frozen=True)
class TransactionStatus:
    confirmed: bool
    amount_out: Optional[int] = None


@dataclass(frozen=True)
class LiquiditySnapshot:
    venue: str
    pair: AssetPair
    amount_a: float
    amount_b: float


class ExecutorSession:
    """
    Process-wide execution state shared by the controller and the executor.

    The single-flight flag is a non-blocking lock acquire, so check-and-set is
    atomic even if two callers race for it.
    """

    def __init__(self):
        self._flight = threading.Lock()
        self._counters_lock = threading.Lock()
        self.total_executions = 0
        self.success_count = 0
        self.failure_count = 0
        self.cumulative_profit = 0.0

    @property
    def is_executing(self) -> bool:
        return self._flight.locked()

    def try_begin(self) -> bool:
        return self._flight.acquire(blocking=False)

    def end(self) -> None:
        if self._flight.locked():
            self._flight.release()

    def record(self, result: ExecutionResult) -> None:
        with self._counters_lock:
            self.total_executions += 1
            if result.success:
                self.success_count += 1
                self.cumulative_profit += result.actual_profit_amount
            else:
                self.failure_count += 1

    def reset(self) -> None:
        with self._counters_lock:
            self.total_executions = 0
            self.success_count = 0
            self.failure_count = 0
            self.cumulative_profit = 0.0

    def snapshot(self) -> Dict[str, Any]:
        with self._counters_lock:
            return {
                'total_executions': self.total_executions,
                'success_count': self.success_count,
                'failure_count': self.failure_count,
                'cumulative_profit': self.cumulative_profit,
                'is_executing': self.is_executing,
            }


def _ref_for_record(ref: Any) -> Any:
    if ref is None or isinstance(ref, (str, int, float, bool)):
        return ref
    if isinstance(ref, dict):
        return ref.get('id', str(ref))
    return str(ref)
