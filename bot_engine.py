# bot_engine.py
"""
Async controller that orchestrates:
- OpportunityScanner (prices from every venue, ranked opportunities)
- RiskManager (emergency stop, rate limit, trade size)
- ArbitrageExecutor (two-leg execution, single-flight)
and keeps the session statistics.

Ticks never overlap: the next scan is armed only after the previous tick,
including any execution it started, has finished.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

from arbitrage_executor import ArbitrageExecutor
from config.logging_config import get_logger
from data_models import ExecutionMode, ExecutionResult, ExecutorSession, Opportunity
from opportunity_scanner import OpportunityScanner, pairs_from_config
from performance_analyzer import summarize_session
from risk_manager import RiskManager
from venue_manager import VenueManager


class ArbitrageBot:
    def __init__(
        self,
        config: Dict[str, Any],
        venue_manager: VenueManager,
        scanner: OpportunityScanner,
        executor: ArbitrageExecutor,
        risk_manager: RiskManager,
        session: Optional[ExecutorSession] = None,
    ):
        self.config = config
        self.venue_manager = venue_manager
        self.scanner = scanner
        self.executor = executor
        self.risk_manager = risk_manager
        self.session = session or executor.session
        self.logger = get_logger(__name__)
        self._apply_params(self.config.get('trading_parameters', {}) or {})

        # --- Bot State ---
        self.is_running = False
        self.start_time: Optional[float] = None
        self.emergency_stopped = False
        self.execution_halted = False
        self.halt_reason: Optional[str] = None
        self.last_opportunities: List[Opportunity] = []
        self.session_results: List[ExecutionResult] = []
        self._stop_event: Optional[asyncio.Event] = None

        self.total_scans = 0
        self.total_opportunities = 0
        self.skipped_rate_limit = 0
        self.skipped_revalidation = 0
        self.skipped_trade_size = 0

    def _apply_params(self, params: Dict[str, Any]) -> None:
        self.pairs = pairs_from_config(params)
        self.trade_amount_in = int(params.get('trade_amount_in', 1_000_000))
        self.scan_interval_s = float(params.get('scan_interval_s', 30))
        self.auto_execution_enabled = bool(params.get('auto_execution_enabled', True))

    # ---------- Lifecycle ----------

    async def initialize(self) -> None:
        """Initializes venues (dropping failures, at least two required) and checks live-mode executors."""
        await self.venue_manager.initialize(min_venues=2)
        if self.executor.execution_mode is ExecutionMode.LIVE and self.auto_execution_enabled:
            self.venue_manager.ensure_executors()
        self.logger.info(
            f"Bot initialized: {len(self.pairs)} pairs, {len(self.venue_manager.venue_names())} venues, "
            f"mode {self.executor.execution_mode.value}, auto-execution "
            f"{'on' if self.auto_execution_enabled else 'off'}"
        )

    async def run(self) -> None:
        """Main loop: one tick, then sleep out the rest of ``scan_interval_s``."""
        self.is_running = True
        self.start_time = time.time()
        self._stop_event = asyncio.Event()
        self.session.reset()
        loop = asyncio.get_running_loop()
        self.logger.info(f"Starting arbitrage bot, scanning every {self.scan_interval_s}s...")

        try:
            while self.is_running:
                tick_started = loop.time()
                try:
                    await self.perform_arbitrage_loop()
                except Exception as e:
                    self.logger.error(f"An error occurred in the bot loop: {e}", exc_info=True)

                if not self.is_running:
                    break
                remaining = self.scan_interval_s - (loop.time() - tick_started)
                if remaining > 0:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        pass
        except asyncio.CancelledError:
            self.logger.info("Bot run task was cancelled.")
            self.is_running = False
            raise
        finally:
            self.is_running = False
            self._log_session_summary()
            self.logger.info("Bot loop finished.")

    def stop(self) -> None:
        """Cooperative stop; an execution already in flight runs to completion."""
        if self.is_running:
            self.logger.info("Stop requested; finishing the current tick.")
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()

    # ---------- One tick ----------

    async def perform_arbitrage_loop(self) -> Optional[ExecutionResult]:
        """Scans every pair and executes at most one opportunity. Returns that execution's result."""
        if self.emergency_stopped or self.risk_manager.check_emergency_stop():
            if not self.emergency_stopped:
                self.logger.critical(f"Emergency stop active ({self.risk_manager.emergency_stop.reason}); "
                                     f"halting for the rest of the session.")
            self.emergency_stopped = True
            self.stop()
            return None

        self.total_scans += 1
        opportunities = await self.scanner.scan(self.pairs, self.trade_amount_in)
        self.total_opportunities += len(opportunities)
        ranked = sorted(opportunities, key=lambda o: o.net_profit_percent, reverse=True)
        self.last_opportunities = ranked

        if not ranked:
            self.logger.info("No profitable opportunities found in this cycle.")
            return None
        if not self.auto_execution_enabled:
            self.logger.info(f"Auto-execution disabled; best of {len(ranked)} opportunities "
                             f"is {ranked[0].pair} at {ranked[0].net_profit_percent:.2f}% net.")
            return None
        if self.execution_halted:
            self.logger.warning(f"Execution halted pending reconciliation ({self.halt_reason}); "
                                f"{len(ranked)} opportunities logged only.")
            return None
        if self.session.is_executing:
            self.logger.info("An execution is still in flight; skipping this cycle's opportunities.")
            return None

        return await self._evaluate_and_execute(ranked)

    async def _evaluate_and_execute(self, ranked: List[Opportunity]) -> Optional[ExecutionResult]:
        for opportunity in ranked:
            if not self.risk_manager.check_rate_limit():
                self.skipped_rate_limit += 1
                return None
            if not await self.executor.validate_opportunity(opportunity):
                self.skipped_revalidation += 1
                continue
            if not self.risk_manager.check_trade_size(opportunity):
                self.skipped_trade_size += 1
                continue

            result = await self.executor.execute_arbitrage(opportunity)
            self.risk_manager.record_execution()
            self._handle_result(result)
            return result
        return None

    def _handle_result(self, result: ExecutionResult) -> None:
        self.session_results.append(result)
        if result.success:
            self.logger.success(
                f"Execution {result.opportunity.opportunity_id} [{result.execution_mode.value}] succeeded: "
                f"{result.actual_profit_amount:.4f} {result.opportunity.pair.asset_b}"
            )
            return
        self.logger.warning(
            f"Execution {result.opportunity.opportunity_id} failed: "
            f"{result.failure_reason.value if result.failure_reason else 'unknown'} ({result.error_message})"
        )
        if result.requires_reconciliation:
            self.execution_halted = True
            self.halt_reason = result.failure_reason.value
            self.logger.critical(
                f"Auto-execution HALTED after {self.halt_reason} on {result.opportunity.pair} "
                f"(buy tx {result.legs.buy_tx_ref if result.legs else None}). Scanning continues; "
                f"reconcile the position and call resume_execution()."
            )

    def resume_execution(self) -> None:
        if self.execution_halted:
            self.logger.info(f"Resuming auto-execution (was halted for {self.halt_reason}).")
        self.execution_halted = False
        self.halt_reason = None

    # ---------- Configuration ----------

    def update_config(self, trading_parameters: Dict[str, Any]) -> None:
        """Merges new trading parameters and pushes them to every component."""
        params = self.config.setdefault('trading_parameters', {})
        params.update(trading_parameters)
        self._apply_params(params)
        self.scanner.update_config(self.config)
        self.executor.update_config(self.config)
        self.risk_manager.update_limits(params)
        self.logger.info(f"Configuration updated: {sorted(trading_parameters)}")

    # ---------- Stats ----------

    def get_stats(self) -> Dict[str, Any]:
        session = self.session.snapshot()
        return {
            'is_running': self.is_running,
            'uptime_s': (time.time() - self.start_time) if self.start_time else 0.0,
            'execution_mode': self.executor.execution_mode.value,
            'auto_execution_enabled': self.auto_execution_enabled,
            'execution_halted': self.execution_halted,
            'halt_reason': self.halt_reason,
            'emergency_stopped': self.emergency_stopped,
            'total_scans': self.total_scans,
            'total_opportunities': self.total_opportunities,
            'total_executions': session['total_executions'],
            'successful_executions': session['success_count'],
            'failed_executions': session['failure_count'],
            'cumulative_profit': session['cumulative_profit'],
            'skipped_rate_limit': self.skipped_rate_limit,
            'skipped_revalidation': self.skipped_revalidation,
            'skipped_trade_size': self.skipped_trade_size,
            'scanner': self.scanner.get_stats(),
            'risk': self.risk_manager.get_status(),
        }

    def session_summary(self) -> Dict[str, Any]:
        return summarize_session([r.to_dict() for r in self.session_results], {
            'total_scans': self.total_scans,
            'total_opportunities': self.total_opportunities,
        })

    def _log_session_summary(self) -> None:
        summary = self.session_summary()
        runtime = (time.time() - self.start_time) if self.start_time else 0.0
        self.logger.info("=== Session summary ===")
        self.logger.info(f"Runtime: {runtime / 60:.1f} min | scans: {summary['scans']} | "
                         f"opportunities: {summary['opportunities_detected']}")
        self.logger.info(f"Executions: {summary['executions']} ({summary['successes']} ok, "
                         f"{summary['failures']} failed) | profit: {summary['cumulative_profit']:.4f}")
        if summary['reconciliation_required']:
            self.logger.critical(f"{summary['reconciliation_required']} execution(s) need manual reconciliation.")
