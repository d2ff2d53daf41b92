# tests/test_executor.py

import asyncio
from unittest.mock import MagicMock

import pytest

from arbitrage_executor import ArbitrageExecutor
from conftest import FakePriceSource, FakeTradeExecutor, make_venue_manager
from core.utils import VenueError
from data_models import ExecutionMode, ExecutionState, FailureReason, Opportunity
from trade_ledger import Ledger


@pytest.fixture
def sample_opportunity(tok_ada):
    """Buy TOK at 35 on venue_x, sell at 37 on venue_y, with 500 ADA."""
    return Opportunity(
        pair=tok_ada,
        buy_venue='venue_x',
        sell_venue='venue_y',
        buy_price=35.0,
        sell_price=37.0,
        gross_spread_percent=5.714,
        total_fee_percent=0.7,
        slippage_percent=0.7,
        net_profit_percent=4.314,
        estimated_profit_amount=21.4,
        trade_amount_in=500_000_000,
        buy_pool_ref='pool-x',
        sell_pool_ref='pool-y',
    )


@pytest.fixture
def trade_executors():
    return {
        'venue_x': FakeTradeExecutor('venue_x', amounts_out={'ADA': 14_242_857}),
        'venue_y': FakeTradeExecutor('venue_y', amounts_out={'TOK': 525_000_000}),
    }


@pytest.fixture
def make_executor(base_config, session, fake_clock, trade_executors):
    def factory(dry_run=True, ledger=None, executors=None):
        base_config['trading_parameters']['dry_run'] = dry_run
        manager = make_venue_manager(
            FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
            FakePriceSource('venue_y', {'TOK/ADA': 37.0}),
            executors=trade_executors if executors is None else executors,
        )
        return ArbitrageExecutor(session, manager, base_config, ledger=ledger, clock=fake_clock, sleep=fake_clock.sleep)
    return factory


@pytest.mark.asyncio
async def test_dry_run_never_touches_trade_executors(make_executor, sample_opportunity, trade_executors, session, fake_clock):
    """
    Tests the "happy path" in dry-run mode: both legs are simulated and the
    estimate is reported as the profit.
    """
    # Arrange
    ledger = MagicMock(spec=Ledger)
    executor = make_executor(dry_run=True, ledger=ledger)

    # Act
    result = await executor.execute_arbitrage(sample_opportunity)

    # Assert
    assert result.success
    assert result.execution_mode is ExecutionMode.DRY_RUN
    assert result.final_state is ExecutionState.COMPLETED
    assert result.actual_profit_amount == sample_opportunity.estimated_profit_amount
    assert fake_clock.sleeps == [1.0, 1.0]
    assert trade_executors['venue_x'].swaps == []
    assert trade_executors['venue_y'].swaps == []
    assert session.snapshot()['success_count'] == 1
    assert session.cumulative_profit == pytest.approx(21.4)
    ledger.append.assert_called_once()
    assert ledger.append.call_args[0][0]['execution_mode'] == 'DRY_RUN'


@pytest.mark.asyncio
async def test_concurrent_call_is_rejected_without_side_effects(make_executor, sample_opportunity, session):
    ledger = MagicMock(spec=Ledger)
    executor = make_executor(dry_run=True, ledger=ledger)

    first, second = await asyncio.gather(
        executor.execute_arbitrage(sample_opportunity),
        executor.execute_arbitrage(sample_opportunity),
    )

    assert first.success
    assert not second.success
    assert second.failure_reason is FailureReason.ALREADY_EXECUTING
    assert session.total_executions == 1
    assert session.failure_count == 0
    assert ledger.append.call_count == 1
    assert not session.is_executing


@pytest.mark.asyncio
async def test_live_round_trip(make_executor, sample_opportunity, trade_executors, session):
    executor = make_executor(dry_run=False)

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.success
    assert result.execution_mode is ExecutionMode.LIVE
    assert result.legs.buy_tx_ref == 'venue_x-tx1'
    assert result.legs.sell_tx_ref == 'venue_y-tx1'
    assert result.actual_profit_amount == pytest.approx(25.0)
    assert result.actual_profit_percent == pytest.approx(5.0)

    buy = trade_executors['venue_x'].swaps[0]
    assert (buy['asset_in'], buy['asset_out'], buy['amount_in'], buy['pool_ref']) == ('ADA', 'TOK', 500_000_000, 'pool-x')
    assert buy['min_amount_out'] < 14_242_857
    sell = trade_executors['venue_y'].swaps[0]
    # The sell leg uses what the buy leg actually delivered.
    assert (sell['asset_in'], sell['amount_in'], sell['pool_ref']) == ('TOK', 14_242_857, 'pool-y')
    assert not session.is_executing


@pytest.mark.asyncio
async def test_scenario_c_confirmation_timeout(make_executor, sample_opportunity, trade_executors, session, fake_clock):
    """Buy confirmed never: FAILED/CONFIRMATION_TIMEOUT after 60s, sell never attempted."""
    trade_executors['venue_x'].confirm_after = None
    executor = make_executor(dry_run=False)
    started = fake_clock.now

    result = await executor.execute_arbitrage(sample_opportunity)

    assert not result.success
    assert result.final_state is ExecutionState.FAILED
    assert result.failure_reason is FailureReason.CONFIRMATION_TIMEOUT
    assert result.requires_reconciliation
    assert result.legs.buy_tx_ref == 'venue_x-tx1'
    assert trade_executors['venue_y'].swaps == []
    assert fake_clock.now - started == pytest.approx(60.0)
    assert all(s <= 5 for s in fake_clock.sleeps)
    assert not session.is_executing
    assert session.failure_count == 1


@pytest.mark.asyncio
async def test_confirmation_arrives_after_a_few_polls(make_executor, sample_opportunity, trade_executors, fake_clock):
    trade_executors['venue_x'].confirm_after = 3
    executor = make_executor(dry_run=False)

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.success
    assert fake_clock.sleeps == [5.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_buy_leg_failure(make_executor, sample_opportunity, trade_executors, session):
    trade_executors['venue_x'].errors = {'ADA': VenueError("insufficient funds", venue='venue_x')}
    executor = make_executor(dry_run=False)

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.failure_reason is FailureReason.BUY_LEG_FAILED
    assert not result.requires_reconciliation
    assert trade_executors['venue_y'].swaps == []
    assert not session.is_executing


@pytest.mark.asyncio
async def test_sell_leg_exception_releases_flag(make_executor, sample_opportunity, trade_executors, session, caplog):
    trade_executors['venue_y'].errors = {'TOK': RuntimeError("pool vanished")}
    executor = make_executor(dry_run=False)

    with caplog.at_level('CRITICAL'):
        result = await executor.execute_arbitrage(sample_opportunity)

    assert result.failure_reason is FailureReason.SELL_LEG_FAILED
    assert result.requires_reconciliation
    assert result.legs.buy_tx_ref == 'venue_x-tx1'
    assert len(trade_executors['venue_y'].swaps) == 1
    assert not session.is_executing
    assert session.failure_count == 1
    assert any(r.levelname == 'CRITICAL' for r in caplog.records)


@pytest.mark.asyncio
async def test_unexpected_error_still_releases_flag(make_executor, sample_opportunity, session, mocker):
    executor = make_executor(dry_run=True)
    mocker.patch.object(executor, '_simulate', side_effect=RuntimeError("injected"))

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.failure_reason is FailureReason.UNEXPECTED_ERROR
    assert not session.is_executing
    assert executor.state is ExecutionState.IDLE


@pytest.mark.asyncio
async def test_live_mode_requires_registered_executors(make_executor, sample_opportunity, trade_executors):
    executor = make_executor(dry_run=False, executors={'venue_x': trade_executors['venue_x']})

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.failure_reason is FailureReason.INVALID_OPPORTUNITY
    assert trade_executors['venue_x'].swaps == []


@pytest.mark.asyncio
async def test_ledger_errors_do_not_propagate(make_executor, sample_opportunity):
    ledger = MagicMock(spec=Ledger)
    ledger.append.side_effect = OSError("disk full")
    executor = make_executor(dry_run=True, ledger=ledger)

    result = await executor.execute_arbitrage(sample_opportunity)

    assert result.success


@pytest.mark.asyncio
async def test_validate_opportunity_applies_hysteresis_band(make_executor, sample_opportunity, mocker):
    executor = make_executor(dry_run=True)
    executor.scanner = MagicMock()

    executor.scanner.revalidate = mocker.AsyncMock(return_value=1.61)
    assert await executor.validate_opportunity(sample_opportunity)

    executor.scanner.revalidate = mocker.AsyncMock(return_value=1.6)
    assert not await executor.validate_opportunity(sample_opportunity)

    executor.scanner.revalidate = mocker.AsyncMock(return_value=None)
    assert not await executor.validate_opportunity(sample_opportunity)


def test_execution_stats(make_executor):
    stats = make_executor(dry_run=True).get_execution_stats()
    assert stats['total_executions'] == 0
    assert stats['success_rate'] == 0.0
    assert stats['execution_mode'] == 'DRY_RUN'
    assert stats['state'] == 'IDLE'


@pytest.mark.asyncio
async def test_result_is_recorded_while_flag_is_held(make_executor, sample_opportunity, session, mocker):
    ledger = MagicMock(spec=Ledger)
    held = []
    ledger.append.side_effect = lambda record: held.append(session.is_executing)
    executor = make_executor(dry_run=True, ledger=ledger)
    original_record = session.record

    def record_under_flag(result):
        held.append(session.is_executing)
        return original_record(result)

    mocker.patch.object(session, 'record', side_effect=record_under_flag)

    await executor.execute_arbitrage(sample_opportunity)

    assert held == [True, True]
    assert session.total_executions == 1
    assert not session.is_executing
