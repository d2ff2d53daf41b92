# tests/conftest.py

import asyncio
import itertools
import time
from typing import Any, Dict, List, Optional

import pytest

from config.logging_config import setup_custom_log_levels
setup_custom_log_levels()  # Logger.trade / Logger.success must exist before the app modules log

from data_models import AssetPair, ExecutorSession, FeeStructure, LiquiditySnapshot, PriceQuote, SwapReceipt, TransactionStatus
from venue_manager import PriceSource, TradeExecutor, VenueManager


class FakePriceSource(PriceSource):
    """
    Quotes from a dict of symbol -> price. A list of prices is consumed one per
    call, repeating the last one, so tests can move the market between calls.
    """

    def __init__(self, name: str, prices: Dict[str, Any], fees: Optional[FeeStructure] = None,
                 error: Optional[Exception] = None, delay: float = 0.0, reserves: Optional[Dict[str, tuple]] = None,
                 age_s: float = 0.0):
        self.name = name
        self.fees = fees or FeeStructure(trading_fee_rate=0.003)
        self.error = error
        self.delay = delay
        self.reserves = reserves or {}
        self.age_s = age_s
        self.calls = 0
        self._prices = {}
        for symbol, value in prices.items():
            self.set_price(symbol, value)

    def set_price(self, symbol: str, value: Any) -> None:
        values = list(value) if isinstance(value, (list, tuple)) else [value]
        self._prices[symbol] = itertools.chain(values[:-1], itertools.repeat(values[-1]))

    async def initialize(self) -> bool:
        return True

    async def get_price(self, pair: AssetPair) -> Optional[PriceQuote]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        source = self._prices.get(pair.symbol)
        if source is None:
            return None
        reserve_a, reserve_b = self.reserves.get(pair.symbol, (None, None))
        return PriceQuote(venue=self.name, pair=pair, price=next(source), reserve_a=reserve_a, reserve_b=reserve_b,
                          pool_ref=f"{self.name}-{pair.symbol}", observed_at=time.time() - self.age_s)

    def get_fee_structure(self) -> FeeStructure:
        return self.fees

    async def get_liquidity(self, pair: AssetPair) -> Optional[LiquiditySnapshot]:
        return None


class FakeTradeExecutor(TradeExecutor):
    """Records every swap; outcomes are scripted per direction (keyed by ``asset_in``)."""

    def __init__(self, name: str, amounts_out: Optional[Dict[str, int]] = None,
                 errors: Optional[Dict[str, Exception]] = None, confirm_after: Optional[int] = 0):
        self.name = name
        self.amounts_out = amounts_out or {}
        self.errors = errors or {}
        self.confirm_after = confirm_after  # None: never confirms
        self.swaps: List[Dict[str, Any]] = []
        self.status_polls = 0
        self._counter = itertools.count(1)

    async def submit_swap(self, asset_in, asset_out, amount_in, min_amount_out, pool_ref) -> SwapReceipt:
        self.swaps.append({'asset_in': asset_in, 'asset_out': asset_out, 'amount_in': amount_in,
                           'min_amount_out': min_amount_out, 'pool_ref': pool_ref})
        if asset_in in self.errors:
            raise self.errors[asset_in]
        return SwapReceipt(tx_ref=f"{self.name}-tx{next(self._counter)}", amount_out=self.amounts_out.get(asset_in))

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        self.status_polls += 1
        if self.confirm_after is None or self.status_polls <= self.confirm_after:
            return TransactionStatus(confirmed=False)
        return TransactionStatus(confirmed=True)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def tok_ada():
    return AssetPair('TOK', 'ADA', decimals_a=6, decimals_b=6)


@pytest.fixture
def scenario_fees():
    """0.3% per side; 0.25 ADA fixed per venue, i.e. 0.1% of a 500 ADA round trip."""
    return FeeStructure(trading_fee_rate=0.003, fixed_network_fee=0.1, fixed_batcher_fee=0.15)


@pytest.fixture
def base_config():
    return {
        'trading_parameters': {
            'pairs': [{'asset_a': 'TOK', 'asset_b': 'ADA', 'decimals_a': 6, 'decimals_b': 6}],
            'trade_amount_in': 500_000_000,
            'profit_threshold': 2.0,
            'scan_interval_s': 30,
            'dry_run': True,
            'dry_run_leg_delay_s': 1.0,
            'max_executions_per_hour': 10,
            'max_trade_amount': 1_000_000_000,
            'confirmation_timeout_s': 60,
            'confirmation_poll_interval_s': 5,
            'emergency_stop_file': None,
        },
        'venues': {
            'venue_x': {'type': 'http_pool', 'fees': {}},
            'venue_y': {'type': 'http_pool', 'fees': {}},
        },
    }


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def session():
    return ExecutorSession()


def make_venue_manager(*sources, executors=None, timeout_s: float = 1.0) -> VenueManager:
    manager = VenueManager(timeout_s=timeout_s)
    executors = executors or {}
    for source in sources:
        manager.register(source.name, source, executors.get(source.name))
    return manager
