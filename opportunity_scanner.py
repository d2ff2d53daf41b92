# opportunity_scanner.py

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.logging_config import get_logger
from core.utils import ValidationError
from cost_model import SlippageModel, StepSlippageModel, estimate_costs, gross_spread_percent, net_profit_percent
from data_models import AssetPair, Opportunity, PriceQuote
from trade_ledger import Ledger
from venue_manager import VenueManager


def pairs_from_config(params: Dict[str, Any]) -> List[AssetPair]:
    """Builds the monitored pairs, in declaration order, from ``trading_parameters.pairs``."""
    pairs = []
    for entry in params.get('pairs', []):
        pairs.append(AssetPair(
            asset_a=entry['asset_a'],
            asset_b=entry['asset_b'],
            decimals_a=int(entry.get('decimals_a', 0)),
            decimals_b=int(entry.get('decimals_b', 6)),
        ))
    return pairs


class OpportunityScanner:
    """
    Compares every venue's price for each configured pair and emits the
    opportunities whose net profit, after fees and slippage, strictly exceeds
    ``profit_threshold``. Buy venue is the global lowest price, sell venue the
    global highest; ties go to the venue that answered first in registry order.
    """

    def __init__(self, venue_manager: VenueManager, config: Dict[str, Any],
                 slippage_model: Optional[SlippageModel] = None, ledger: Optional[Ledger] = None,
                 clock: Callable[[], float] = time.time):
        self.venue_manager = venue_manager
        self.slippage_model = slippage_model or StepSlippageModel()
        self.ledger = ledger
        self.clock = clock
        self.logger = get_logger(__name__)
        self.update_config(config)

        self.scan_count = 0
        self.opportunities_found = 0
        self.last_scan_time: Optional[float] = None
        self.last_scan_duration_ms = 0
        self.pair_errors = 0

    def update_config(self, config: Dict[str, Any]) -> None:
        params = (config or {}).get('trading_parameters', {}) or {}
        self.profit_threshold = float(params.get('profit_threshold', 2.0))
        self.high_profit_alert_percent = float(params.get('high_profit_alert_percent', 5.0))
        self.purge_every_scans = int(params.get('purge_every_scans', 50))
        self.opportunity_retention_s = float(params.get('opportunity_retention_h', 24)) * 3600
        self.max_quote_age_s = float(params.get('max_quote_age_s', 120))

    # ---------- Detection ----------

    def evaluate_quotes(self, pair: AssetPair, low: PriceQuote, high: PriceQuote, trade_amount_in: int) -> Opportunity:
        """Prices the round trip buying on ``low`` and selling on ``high``; no threshold applied."""
        buy_fees = self.venue_manager.get_fee_structure(low.venue)
        sell_fees = self.venue_manager.get_fee_structure(high.venue)
        gross = gross_spread_percent(low.price, high.price)
        costs = estimate_costs(
            trade_amount_in, low.price, high.price, buy_fees, sell_fees,
            quote_decimals=pair.decimals_b, slippage_model=self.slippage_model, buy_quote=low,
        )
        return Opportunity(
            pair=pair,
            buy_venue=low.venue,
            sell_venue=high.venue,
            buy_price=low.price,
            sell_price=high.price,
            gross_spread_percent=gross,
            total_fee_percent=costs.total_fee_percent,
            slippage_percent=costs.slippage_percent,
            net_profit_percent=net_profit_percent(gross, costs),
            estimated_profit_amount=costs.estimated_profit_amount,
            trade_amount_in=trade_amount_in,
            buy_pool_ref=low.pool_ref,
            sell_pool_ref=high.pool_ref,
            detected_at=self.clock(),
        )

    def _is_stale(self, quote: PriceQuote, now: float) -> bool:
        if self.max_quote_age_s <= 0:
            return False
        age = quote.age(now)
        if age > self.max_quote_age_s:
            self.logger.info(f"{quote.pair}: ignoring {quote.venue} quote, {age:.0f}s old (max {self.max_quote_age_s:.0f}s)")
            return True
        return False

    async def detect_for_pair(self, pair: AssetPair, trade_amount_in: int) -> Optional[Opportunity]:
        now = self.clock()
        quotes = [q for q in await self.venue_manager.get_all_prices(pair) if not self._is_stale(q, now)]
        if len(quotes) < 2:
            self.logger.debug(f"{pair}: {len(quotes)} quote(s), need at least 2")
            return None

        low = min(quotes, key=lambda q: q.price)
        high = max(quotes, key=lambda q: q.price)
        if low.venue == high.venue or low.price == high.price:
            self.logger.debug(f"{pair}: no spread across {len(quotes)} venues")
            return None

        opportunity = self.evaluate_quotes(pair, low, high, trade_amount_in)
        self.logger.debug(
            f"{pair}: buy {low.venue}@{low.price:.6f} sell {high.venue}@{high.price:.6f} "
            f"gross={opportunity.gross_spread_percent:.3f}% net={opportunity.net_profit_percent:.3f}%"
        )
        if opportunity.net_profit_percent > self.profit_threshold:
            return opportunity
        return None

    async def scan(self, pairs: Iterable[AssetPair], trade_amount_in: int) -> List[Opportunity]:
        started = time.monotonic()
        self.scan_count += 1
        opportunities = []

        for pair in pairs:
            try:
                opportunity = await self.detect_for_pair(pair, trade_amount_in)
            except ValidationError as e:
                self.logger.warning(f"{pair}: skipped, {e}")
                self.pair_errors += 1
                continue
            except Exception as e:
                self.logger.error(f"{pair}: unexpected error while scanning: {e}", exc_info=True)
                self.pair_errors += 1
                continue
            if opportunity is None:
                continue

            opportunities.append(opportunity)
            self._report(opportunity)

        self.opportunities_found += len(opportunities)
        self.last_scan_time = self.clock()
        self.last_scan_duration_ms = int((time.monotonic() - started) * 1000)
        self.logger.info(f"Scan #{self.scan_count}: {len(opportunities)} opportunities in {self.last_scan_duration_ms}ms")

        if self.ledger is not None and self.purge_every_scans > 0 and self.scan_count % self.purge_every_scans == 0:
            try:
                self.ledger.purge_older_than(self.opportunity_retention_s)
            except Exception as e:
                self.logger.error(f"Failed to purge old opportunity records: {e}")

        return opportunities

    def _report(self, opportunity: Opportunity) -> None:
        self.logger.info(
            f"OPPORTUNITY {opportunity.pair}: buy {opportunity.buy_venue} @ {opportunity.buy_price:.6f}, "
            f"sell {opportunity.sell_venue} @ {opportunity.sell_price:.6f}, "
            f"net {opportunity.net_profit_percent:.2f}% (~{opportunity.estimated_profit_amount:.4f} {opportunity.pair.asset_b})"
        )
        if opportunity.net_profit_percent > self.high_profit_alert_percent:
            self.logger.warning(
                f"HIGH PROFIT ALERT: {opportunity.pair} at {opportunity.net_profit_percent:.2f}% net, "
                f"check quotes for staleness before trusting it."
            )
        if self.ledger is not None:
            try:
                self.ledger.append(opportunity.to_dict())
            except Exception as e:
                self.logger.error(f"Failed to record opportunity {opportunity.opportunity_id}: {e}")

    # ---------- Re-validation ----------

    async def revalidate(self, opportunity: Opportunity) -> Optional[float]:
        """
        Fresh net profit percent for the same pair, venues and direction, or None
        if either venue no longer quotes the pair or its quote is too old.
        """
        pair = opportunity.pair
        buy_quote = await self.venue_manager.get_quote(opportunity.buy_venue, pair)
        sell_quote = await self.venue_manager.get_quote(opportunity.sell_venue, pair)
        if buy_quote is None or sell_quote is None:
            return None
        now = self.clock()
        if self._is_stale(buy_quote, now) or self._is_stale(sell_quote, now):
            return None
        fresh = self.evaluate_quotes(pair, buy_quote, sell_quote, opportunity.trade_amount_in)
        return fresh.net_profit_percent

    def get_stats(self) -> Dict[str, Any]:
        return {
            'scan_count': self.scan_count,
            'opportunities_found': self.opportunities_found,
            'last_scan_time': self.last_scan_time,
            'last_scan_duration_ms': self.last_scan_duration_ms,
            'pair_errors': self.pair_errors,
            'profit_threshold': self.profit_threshold,
        }
