# arbitrage_executor.py

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from config.logging_config import get_logger
from data_models import (ExecutionMode, ExecutionResult, ExecutionState, ExecutorSession, FailureReason,
                         Opportunity, TradeLegs, TransactionStatus)
from trade_ledger import Ledger
from venue_manager import TradeExecutor, VenueManager


class ArbitrageExecutor:
    """
    Drives one opportunity through buy -> wait for confirmation -> sell.

    Single-flight: the session's flag is taken with a non-blocking acquire and
    always released on the way out, whatever the outcome. A second call while
    one is in flight gets ALREADY_EXECUTING back and leaves counters and the
    ledger alone.

    ``clock`` and ``sleep`` drive the confirmation deadline and the dry-run
    delays, so they can be replaced in tests.
    """

    def __init__(self, session: ExecutorSession, venue_manager: VenueManager, config: Dict[str, Any],
                 ledger: Optional[Ledger] = None, scanner: Any = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.session = session
        self.venue_manager = venue_manager
        self.ledger = ledger
        self.scanner = scanner
        self.clock = clock
        self.sleep = sleep
        self.state = ExecutionState.IDLE
        self.logger = get_logger(__name__)
        self.update_config(config)

    def update_config(self, config: Dict[str, Any]) -> None:
        params = (config or {}).get('trading_parameters', {}) or {}
        self.dry_run = bool(params.get('dry_run', True))
        self.dry_run_leg_delay_s = float(params.get('dry_run_leg_delay_s', 1.0))
        self.confirmation_timeout_s = float(params.get('confirmation_timeout_s', 60))
        self.confirmation_poll_interval_s = float(params.get('confirmation_poll_interval_s', 5))
        self.swap_timeout_s = float(params.get('swap_timeout_s', 30))
        self.slippage_tolerance_percent = float(params.get('slippage_tolerance_percent', 0.5))
        self.profit_threshold = float(params.get('profit_threshold', 2.0))
        self.revalidation_band = float(params.get('revalidation_band', 0.8))

    @property
    def execution_mode(self) -> ExecutionMode:
        return ExecutionMode.DRY_RUN if self.dry_run else ExecutionMode.LIVE

    # ---------- Re-validation ----------

    async def validate_opportunity(self, opportunity: Opportunity) -> bool:
        """
        Re-prices the opportunity on fresh quotes; it stays valid only while the
        fresh net profit exceeds ``profit_threshold * revalidation_band``.
        """
        if self.scanner is None:
            return True
        floor = self.profit_threshold * self.revalidation_band
        fresh_net = await self.scanner.revalidate(opportunity)
        if fresh_net is None:
            self.logger.info(f"Re-validation failed for {opportunity.pair}: a venue stopped quoting.")
            return False
        # Fresh net profit, not gross spread, must clear the band floor.
        if fresh_net <= floor:
            self.logger.info(
                f"Re-validation failed for {opportunity.pair}: net {fresh_net:.3f}% "
                f"(was {opportunity.net_profit_percent:.3f}%) is not above {floor:.3f}%."
            )
            return False
        self.logger.debug(f"Re-validated {opportunity.pair}: net {fresh_net:.3f}% > {floor:.3f}%")
        return True

    # ---------- Execution ----------

    async def execute_arbitrage(self, opportunity: Opportunity) -> ExecutionResult:
        mode = self.execution_mode
        if not self.session.try_begin():
            self.logger.warning(f"Execution of {opportunity.opportunity_id} rejected: another execution is in flight.")
            return ExecutionResult(
                opportunity=opportunity,
                success=False,
                execution_mode=mode,
                final_state=ExecutionState.FAILED,
                failure_reason=FailureReason.ALREADY_EXECUTING,
                error_message="another execution is in flight",
            )

        started = self.clock()
        try:
            try:
                result = await self._execute(opportunity, mode, started)
            except Exception as e:
                self.logger.exception(f"Unexpected error while executing {opportunity.opportunity_id}: {e}")
                result = self._failed(opportunity, mode, started, FailureReason.UNEXPECTED_ERROR, str(e))
            # Counters and ledger are written while the flag is still held.
            self.session.record(result)
            self._append_to_ledger(result)
        finally:
            self.state = ExecutionState.IDLE
            self.session.end()
        return result

    async def _execute(self, opportunity: Opportunity, mode: ExecutionMode, started: float) -> ExecutionResult:
        self.state = ExecutionState.VALIDATING
        problem = self._check_opportunity(opportunity, mode)
        if problem:
            self.logger.warning(f"Opportunity {opportunity.opportunity_id} is invalid: {problem}")
            return self._failed(opportunity, mode, started, FailureReason.INVALID_OPPORTUNITY, problem)

        self.logger.trade(
            f"[{mode.value}] Executing {opportunity.pair}: buy on {opportunity.buy_venue}, "
            f"sell on {opportunity.sell_venue}, amount {opportunity.trade_amount_in}, "
            f"expected net {opportunity.net_profit_percent:.2f}%",
            extra=self._log_context(opportunity),
        )
        if mode is ExecutionMode.DRY_RUN:
            return await self._simulate(opportunity, mode, started)
        return await self._execute_live(opportunity, mode, started)

    def _check_opportunity(self, opportunity: Opportunity, mode: ExecutionMode) -> Optional[str]:
        if opportunity.trade_amount_in is None or opportunity.trade_amount_in <= 0:
            return f"trade amount must be positive, got {opportunity.trade_amount_in}"
        if opportunity.buy_venue == opportunity.sell_venue:
            return "buy and sell venue are the same"
        if opportunity.buy_price <= 0 or opportunity.sell_price <= 0:
            return "prices must be positive"
        if mode is ExecutionMode.LIVE:
            for venue in (opportunity.buy_venue, opportunity.sell_venue):
                if self.venue_manager.get_trade_executor(venue) is None:
                    return f"no trade executor registered for venue '{venue}'"
        return None

    async def _simulate(self, opportunity: Opportunity, mode: ExecutionMode, started: float) -> ExecutionResult:
        self.state = ExecutionState.BUYING
        self.logger.info(f"[DRY RUN] Simulating buy of {opportunity.pair.asset_a} on {opportunity.buy_venue}")
        await self.sleep(self.dry_run_leg_delay_s)
        self.state = ExecutionState.SELLING
        self.logger.info(f"[DRY RUN] Simulating sell of {opportunity.pair.asset_a} on {opportunity.sell_venue}")
        await self.sleep(self.dry_run_leg_delay_s)

        self.state = ExecutionState.COMPLETED
        amount = opportunity.trade_amount_in / (10 ** opportunity.pair.decimals_b)
        profit = opportunity.estimated_profit_amount
        self.logger.success(f"[DRY RUN] Completed {opportunity.pair}: simulated profit {profit:.4f} {opportunity.pair.asset_b}")
        return ExecutionResult(
            opportunity=opportunity,
            success=True,
            execution_mode=mode,
            final_state=ExecutionState.COMPLETED,
            actual_profit_amount=profit,
            actual_profit_percent=profit / amount * 100.0,
            duration_ms=self._elapsed_ms(started),
        )

    async def _execute_live(self, opportunity: Opportunity, mode: ExecutionMode, started: float) -> ExecutionResult:
        pair = opportunity.pair
        buy_executor = self.venue_manager.get_trade_executor(opportunity.buy_venue)
        sell_executor = self.venue_manager.get_trade_executor(opportunity.sell_venue)
        buy_fees = self.venue_manager.get_fee_structure(opportunity.buy_venue)
        sell_fees = self.venue_manager.get_fee_structure(opportunity.sell_venue)
        amount_in = opportunity.trade_amount_in

        # Leg 1: quote currency -> token on the cheap venue.
        self.state = ExecutionState.BUYING
        expected_tokens = (amount_in / 10 ** pair.decimals_b) / opportunity.buy_price * (1 - buy_fees.trading_fee_rate)
        expected_tokens_units = int(expected_tokens * 10 ** pair.decimals_a)
        try:
            buy_receipt = await asyncio.wait_for(
                buy_executor.submit_swap(pair.asset_b, pair.asset_a, amount_in,
                                         self._min_out(expected_tokens_units), opportunity.buy_pool_ref),
                timeout=self.swap_timeout_s,
            )
        except Exception as e:
            self.logger.error(f"Buy leg on {opportunity.buy_venue} failed: {e}")
            return self._failed(opportunity, mode, started, FailureReason.BUY_LEG_FAILED, str(e))
        self.logger.trade(f"Buy leg submitted on {opportunity.buy_venue}: tx {buy_receipt.tx_ref}")

        self.state = ExecutionState.AWAITING_BUY_CONFIRMATION
        status = await self._wait_for_confirmation(buy_executor, buy_receipt.tx_ref)
        if status is None:
            self.logger.critical(
                f"Buy tx {buy_receipt.tx_ref} on {opportunity.buy_venue} not confirmed within "
                f"{self.confirmation_timeout_s:.0f}s. Sell leg NOT attempted; position needs manual reconciliation.",
                extra=self._log_context(opportunity, opportunity.buy_venue),
            )
            return self._failed(opportunity, mode, started, FailureReason.CONFIRMATION_TIMEOUT,
                                "buy confirmation timed out", TradeLegs(buy_tx_ref=buy_receipt.tx_ref))

        tokens = status.amount_out if status.amount_out is not None else buy_receipt.amount_out
        if tokens is None:
            self.logger.warning(f"Venue {opportunity.buy_venue} did not report the received amount; selling the expected {expected_tokens_units}.")
            tokens = expected_tokens_units

        # Leg 2: token -> quote currency on the expensive venue, with what was actually received.
        self.state = ExecutionState.SELLING
        expected_proceeds = (tokens / 10 ** pair.decimals_a) * opportunity.sell_price * (1 - sell_fees.trading_fee_rate)
        expected_proceeds_units = int(expected_proceeds * 10 ** pair.decimals_b)
        try:
            sell_receipt = await asyncio.wait_for(
                sell_executor.submit_swap(pair.asset_a, pair.asset_b, tokens,
                                          self._min_out(expected_proceeds_units), opportunity.sell_pool_ref),
                timeout=self.swap_timeout_s,
            )
        except Exception as e:
            self.logger.critical(
                f"Sell leg on {opportunity.sell_venue} failed after buy {buy_receipt.tx_ref} confirmed: {e}. "
                f"Holding {tokens} units of {pair.asset_a}; position needs manual reconciliation.",
                extra=self._log_context(opportunity, opportunity.sell_venue),
            )
            return self._failed(opportunity, mode, started, FailureReason.SELL_LEG_FAILED, str(e),
                                TradeLegs(buy_tx_ref=buy_receipt.tx_ref))

        proceeds = sell_receipt.amount_out if sell_receipt.amount_out is not None else expected_proceeds_units
        profit = (proceeds - amount_in) / 10 ** pair.decimals_b
        self.state = ExecutionState.COMPLETED
        self.logger.success(
            f"Arbitrage completed on {pair}: profit {profit:.4f} {pair.asset_b} "
            f"(buy {buy_receipt.tx_ref}, sell {sell_receipt.tx_ref})"
        )
        return ExecutionResult(
            opportunity=opportunity,
            success=True,
            execution_mode=mode,
            final_state=ExecutionState.COMPLETED,
            actual_profit_amount=profit,
            actual_profit_percent=(proceeds - amount_in) / amount_in * 100.0,
            legs=TradeLegs(buy_tx_ref=buy_receipt.tx_ref, sell_tx_ref=sell_receipt.tx_ref),
            duration_ms=self._elapsed_ms(started),
        )

    async def _wait_for_confirmation(self, executor: TradeExecutor, tx_ref: str) -> Optional[TransactionStatus]:
        """Polls until confirmed; None once ``confirmation_timeout_s`` has passed since submission."""
        deadline = self.clock() + self.confirmation_timeout_s
        attempt = 0
        while True:
            attempt += 1
            try:
                status = await asyncio.wait_for(executor.get_transaction_status(tx_ref),
                                                timeout=self.confirmation_poll_interval_s)
                if status.confirmed:
                    self.logger.info(f"tx {tx_ref} confirmed after {attempt} poll(s)")
                    return status
            except Exception as e:
                self.logger.debug(f"Status poll {attempt} for tx {tx_ref} failed: {e}")

            remaining = deadline - self.clock()
            if remaining <= 0:
                return None
            await self.sleep(min(self.confirmation_poll_interval_s, remaining))

    @staticmethod
    def _log_context(opportunity: Opportunity, venue: Optional[str] = None) -> Dict[str, Any]:
        context = {'opportunity_id': opportunity.opportunity_id, 'pair': opportunity.pair.symbol}
        if venue is not None:
            context['venue'] = venue
        return context

    def _min_out(self, expected: int) -> int:
        return int(expected * (1 - self.slippage_tolerance_percent / 100.0))

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)

    def _failed(self, opportunity: Opportunity, mode: ExecutionMode, started: float, reason: FailureReason,
                message: str, legs: Optional[TradeLegs] = None) -> ExecutionResult:
        self.state = ExecutionState.FAILED
        return ExecutionResult(
            opportunity=opportunity,
            success=False,
            execution_mode=mode,
            final_state=ExecutionState.FAILED,
            failure_reason=reason,
            error_message=message,
            legs=legs,
            duration_ms=self._elapsed_ms(started),
        )

    def _append_to_ledger(self, result: ExecutionResult) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.append(result.to_dict())
        except Exception as e:
            self.logger.error(f"Failed to record execution of {result.opportunity.opportunity_id}: {e}")

    def get_execution_stats(self) -> Dict[str, Any]:
        stats = self.session.snapshot()
        total = stats['total_executions']
        stats['success_rate'] = (stats['success_count'] / total * 100.0) if total else 0.0
        stats['state'] = self.state.value
        stats['execution_mode'] = self.execution_mode.value
        return stats
