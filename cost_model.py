# cost_model.py
"""
Fee and slippage accounting for a two-leg round trip.

Percentages (trading fees, fixed fees relative to trade size, slippage) are
additive so opportunities can be ranked without executing them; the simulated
round trip in ``estimate_costs`` is the authoritative profit estimate.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from core.utils import ValidationError
from data_models import FeeStructure, PriceQuote


# (upper bound in whole quote units, slippage %); None closes the last band.
DEFAULT_SLIPPAGE_BANDS: List[Tuple[Optional[float], float]] = [
    (10.0, 0.1),
    (100.0, 0.3),
    (1000.0, 0.7),
    (None, 1.5),
]


class SlippageModel:
    """Interface: estimated slippage percent for a trade of ``amount`` whole quote units."""

    def estimate(self, amount: float, quote: Optional[PriceQuote] = None) -> float:
        raise NotImplementedError


class StepSlippageModel(SlippageModel):
    """Coarse size-banded heuristic; not a venue curve simulation."""

    def __init__(self, bands: Optional[Sequence[Tuple[Optional[float], float]]] = None):
        self.bands = [(None if b is None else float(b), float(p)) for b, p in (bands or DEFAULT_SLIPPAGE_BANDS)]
        self._validate()

    def _validate(self):
        if not self.bands or self.bands[-1][0] is not None:
            raise ValueError("slippage bands must end with an open (None) upper bound")
        last_bound, last_pct = float("-inf"), float("-inf")
        for bound, pct in self.bands:
            if pct < 0:
                raise ValueError("slippage percentages must be non-negative")
            if pct < last_pct:
                raise ValueError("slippage bands must be non-decreasing")
            if bound is not None:
                if bound <= last_bound:
                    raise ValueError("slippage band bounds must be strictly increasing")
                last_bound = bound
            last_pct = pct

    def estimate(self, amount: float, quote: Optional[PriceQuote] = None) -> float:
        for bound, pct in self.bands:
            if bound is None or amount < bound:
                return pct
        return self.bands[-1][1]


class ReserveImpactSlippageModel(SlippageModel):
    """
    Constant-product price impact from pool reserves, the same curve used by
    ``constant_product_output``. Falls back to ``fallback`` when the quote
    carries no reserves (order-book venues).
    """

    def __init__(self, fallback: Optional[SlippageModel] = None):
        self.fallback = fallback or StepSlippageModel()

    def estimate(self, amount: float, quote: Optional[PriceQuote] = None) -> float:
        if quote is None or not quote.reserve_b or not quote.reserve_a:
            return self.fallback.estimate(amount, quote)
        return price_impact_percent(amount, quote.reserve_b, quote.reserve_a)


def constant_product_output(amount_in: float, reserve_in: float, reserve_out: float, fee_rate: float = 0.0) -> float:
    """x*y=k swap output after the pool fee."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    amount_in_with_fee = amount_in * (1.0 - fee_rate)
    return (amount_in_with_fee * reserve_out) / (reserve_in + amount_in_with_fee)


def price_impact_percent(amount_in: float, reserve_in: float, reserve_out: float) -> float:
    """Relative gap between the spot price and the realised execution price, in percent."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    spot = reserve_out / reserve_in
    realised = constant_product_output(amount_in, reserve_in, reserve_out) / amount_in
    return (spot - realised) / spot * 100.0


@dataclass(frozen=True)
class CostBreakdown:
    trading_fee_percent: float
    fixed_fees_percent: float
    fixed_fees_amount: float
    total_fee_percent: float
    slippage_percent: float
    estimated_profit_amount: float

    def to_dict(self):
        return {
            'trading_fee_percent': self.trading_fee_percent,
            'fixed_fees_percent': self.fixed_fees_percent,
            'fixed_fees_amount': self.fixed_fees_amount,
            'total_fee_percent': self.total_fee_percent,
            'slippage_percent': self.slippage_percent,
            'estimated_profit_amount': self.estimated_profit_amount,
        }


def to_quote_units(amount_in: int, decimals: int) -> float:
    return amount_in / (10 ** decimals)


def gross_spread_percent(buy_price: float, sell_price: float) -> float:
    if buy_price <= 0:
        raise ValidationError(f"buy price must be positive, got {buy_price}")
    return (sell_price - buy_price) / buy_price * 100.0


def net_profit_percent(gross_percent: float, costs: CostBreakdown) -> float:
    return gross_percent - costs.total_fee_percent - costs.slippage_percent


def estimate_costs(
    trade_amount_in: int,
    buy_price: float,
    sell_price: float,
    buy_fees: FeeStructure,
    sell_fees: FeeStructure,
    quote_decimals: int = 6,
    slippage_model: Optional[SlippageModel] = None,
    buy_quote: Optional[PriceQuote] = None,
) -> CostBreakdown:
    """
    Costs of buying the token on the buy venue and selling it on the sell venue.

    ``trade_amount_in`` is in the quote currency's smallest unit; fixed fees and the
    returned profit are in whole quote units.
    """
    if trade_amount_in is None or trade_amount_in <= 0:
        raise ValidationError(f"trade amount must be positive, got {trade_amount_in}")
    if buy_price <= 0 or sell_price <= 0:
        raise ValidationError(f"prices must be positive, got buy={buy_price} sell={sell_price}")

    amount = to_quote_units(trade_amount_in, quote_decimals)
    model = slippage_model or StepSlippageModel()

    trading_fee_percent = buy_fees.trading_fee_rate * 100.0 + sell_fees.trading_fee_rate * 100.0
    fixed_fees_amount = buy_fees.fixed_total + sell_fees.fixed_total
    fixed_fees_percent = fixed_fees_amount / amount * 100.0
    slippage_percent = model.estimate(amount, buy_quote)

    # Prices are quote per token: buying divides, selling multiplies.
    tokens_out = amount / buy_price * (1.0 - buy_fees.trading_fee_rate)
    proceeds = tokens_out * sell_price * (1.0 - sell_fees.trading_fee_rate)
    estimated_profit = proceeds - fixed_fees_amount - amount

    return CostBreakdown(
        trading_fee_percent=trading_fee_percent,
        fixed_fees_percent=fixed_fees_percent,
        fixed_fees_amount=fixed_fees_amount,
        total_fee_percent=trading_fee_percent + fixed_fees_percent,
        slippage_percent=slippage_percent,
        estimated_profit_amount=estimated_profit,
    )


def build_slippage_model(config: Optional[dict]) -> SlippageModel:
    """Builds the configured slippage model (``step`` or ``reserve_impact``)."""
    config = config or {}
    bands: Optional[Iterable] = config.get('bands')
    step = StepSlippageModel([tuple(b) for b in bands] if bands else None)
    if config.get('type', 'step') == 'reserve_impact':
        return ReserveImpactSlippageModel(fallback=step)
    return step
