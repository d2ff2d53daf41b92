# tests/test_bot_engine.py

import asyncio

import pytest

from arbitrage_executor import ArbitrageExecutor
from bot_engine import ArbitrageBot
from conftest import FakePriceSource, FakeTradeExecutor, make_venue_manager
from data_models import FailureReason, FeeStructure
from opportunity_scanner import OpportunityScanner
from risk_manager import RiskManager


def build_bot(config, sources, session, clock, executors=None):
    manager = make_venue_manager(*sources, executors=executors)
    scanner = OpportunityScanner(manager, config)
    executor = ArbitrageExecutor(session, manager, config, scanner=scanner, clock=clock, sleep=clock.sleep)
    return ArbitrageBot(config, manager, scanner, executor, RiskManager(config), session)


@pytest.fixture
def two_pair_config(base_config):
    base_config['trading_parameters']['pairs'] = [
        {'asset_a': 'TOK', 'asset_b': 'ADA', 'decimals_a': 6, 'decimals_b': 6},
        {'asset_a': 'FOO', 'asset_b': 'ADA', 'decimals_a': 6, 'decimals_b': 6},
    ]
    return base_config


@pytest.mark.asyncio
async def test_executes_best_opportunity_only_once_per_tick(two_pair_config, session, fake_clock):
    # Arrange
    x = FakePriceSource('venue_x', {'TOK/ADA': 35.0, 'FOO/ADA': 10.0})
    y = FakePriceSource('venue_y', {'TOK/ADA': 37.0, 'FOO/ADA': 11.0})
    bot = build_bot(two_pair_config, [x, y], session, fake_clock)

    # Act
    result = await bot.perform_arbitrage_loop()

    # Assert
    assert result.success
    assert result.opportunity.pair.asset_a == 'FOO'  # 10% spread ranks above 5.7%
    assert len(bot.last_opportunities) == 2
    assert session.total_executions == 1
    assert bot.risk_manager.rate_limit.count() == 1
    stats = bot.get_stats()
    assert stats['total_scans'] == 1
    assert stats['total_opportunities'] == 2
    assert stats['successful_executions'] == 1


@pytest.mark.asyncio
async def test_scenario_d_converged_spread_is_not_executed(base_config, session, fake_clock):
    """Detected at 2.2% net; on re-validation net is 70% of that, below the 80% band, so nothing trades."""
    # Arrange: a 500 ADA round trip costs 0.7% in fees and 0.7% slippage, so net = gross - 1.4.
    base_config['trading_parameters']['dry_run'] = False
    fees = {'trading_fee_rate': 0.003, 'fixed_network_fee': 0.1, 'fixed_batcher_fee': 0.15}
    x = FakePriceSource('venue_x', {'TOK/ADA': 100.0}, FeeStructure.from_dict(fees))
    y = FakePriceSource('venue_y', {'TOK/ADA': [103.6, 102.94]}, FeeStructure.from_dict(fees))
    executors = {'venue_x': FakeTradeExecutor('venue_x'), 'venue_y': FakeTradeExecutor('venue_y')}
    bot = build_bot(base_config, [x, y], session, fake_clock, executors)

    # Act
    result = await bot.perform_arbitrage_loop()

    # Assert
    assert result is None
    detected = bot.last_opportunities[0]
    assert detected.net_profit_percent == pytest.approx(2.2)
    fresh = await bot.scanner.revalidate(detected)
    assert fresh == pytest.approx(0.7 * 2.2)
    assert executors['venue_x'].swaps == [] and executors['venue_y'].swaps == []
    assert bot.skipped_revalidation == 1
    assert session.total_executions == 0
    assert bot.risk_manager.rate_limit.count() == 0


@pytest.mark.asyncio
async def test_auto_execution_disabled_only_logs(base_config, session, fake_clock):
    base_config['trading_parameters']['auto_execution_enabled'] = False
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 37.0})], session, fake_clock)

    assert await bot.perform_arbitrage_loop() is None
    assert len(bot.last_opportunities) == 1
    assert session.total_executions == 0


@pytest.mark.asyncio
async def test_rate_limited_tick_does_not_execute(base_config, session, fake_clock):
    base_config['trading_parameters']['max_executions_per_hour'] = 1
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 37.0})], session, fake_clock)

    assert (await bot.perform_arbitrage_loop()).success
    assert await bot.perform_arbitrage_loop() is None
    assert bot.skipped_rate_limit == 1
    assert session.total_executions == 1


@pytest.mark.asyncio
async def test_trade_size_limit_skips_opportunity(base_config, session, fake_clock):
    base_config['trading_parameters']['max_trade_amount'] = 1_000_000
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 37.0})], session, fake_clock)

    assert await bot.perform_arbitrage_loop() is None
    assert bot.skipped_trade_size == 1


@pytest.mark.asyncio
async def test_emergency_stop_halts_before_scanning(base_config, session, fake_clock, tmp_path, mocker):
    flag = tmp_path / 'EMERGENCY_STOP'
    flag.write_text("stop")
    base_config['trading_parameters']['emergency_stop_file'] = str(flag)
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 37.0})], session, fake_clock)
    scan = mocker.spy(bot.scanner, 'scan')

    assert await bot.perform_arbitrage_loop() is None

    scan.assert_not_called()
    assert bot.emergency_stopped
    assert not bot.is_running
    # Terminal for the session, even once the file is gone.
    flag.unlink()
    assert await bot.perform_arbitrage_loop() is None
    scan.assert_not_called()


@pytest.mark.asyncio
async def test_unsafe_failure_halts_execution_until_resumed(base_config, session, fake_clock):
    base_config['trading_parameters']['dry_run'] = False
    executors = {
        'venue_x': FakeTradeExecutor('venue_x', amounts_out={'ADA': 14_242_857}, confirm_after=None),
        'venue_y': FakeTradeExecutor('venue_y', amounts_out={'TOK': 525_000_000}),
    }
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 37.0})], session, fake_clock, executors)

    result = await bot.perform_arbitrage_loop()
    assert result.failure_reason is FailureReason.CONFIRMATION_TIMEOUT
    assert bot.execution_halted

    # Scanning continues but nothing is executed.
    assert await bot.perform_arbitrage_loop() is None
    assert bot.total_scans == 2
    assert len(executors['venue_x'].swaps) == 1

    bot.resume_execution()
    executors['venue_x'].confirm_after = 0
    executors['venue_x'].status_polls = 0
    assert (await bot.perform_arbitrage_loop()).success
    summary = bot.session_summary()
    assert summary['executions'] == 2
    assert summary['reconciliation_required'] == 1


@pytest.mark.asyncio
async def test_run_loop_stops_cooperatively(base_config, session, fake_clock, mocker):
    base_config['trading_parameters']['scan_interval_s'] = 0.01
    bot = build_bot(base_config, [FakePriceSource('venue_x', {'TOK/ADA': 35.0}),
                                  FakePriceSource('venue_y', {'TOK/ADA': 35.0})], session, fake_clock)
    ticks = []
    original = bot.perform_arbitrage_loop

    async def counting_tick():
        ticks.append(len(ticks))
        if len(ticks) == 3:
            bot.stop()
        return await original()

    mocker.patch.object(bot, 'perform_arbitrage_loop', side_effect=counting_tick)

    await asyncio.wait_for(bot.run(), timeout=5)

    assert len(ticks) == 3
    assert not bot.is_running


@pytest.mark.asyncio
async def test_initialize_drops_failed_venues(base_config, session, fake_clock, mocker):
    broken = FakePriceSource('venue_z', {})
    mocker.patch.object(broken, 'initialize', side_effect=ConnectionError("down"))
    bot = build_bot(base_config, [FakePriceSource('venue_x', {}), FakePriceSource('venue_y', {}), broken],
                    session, fake_clock)

    await bot.initialize()

    assert bot.venue_manager.venue_names() == ['venue_x', 'venue_y']


def test_update_config_propagates(base_config, session, fake_clock):
    bot = build_bot(base_config, [FakePriceSource('venue_x', {}), FakePriceSource('venue_y', {})], session, fake_clock)

    bot.update_config({'profit_threshold': 3.5, 'max_trade_amount': 42, 'dry_run': False})

    assert bot.scanner.profit_threshold == 3.5
    assert bot.executor.dry_run is False
    assert bot.risk_manager.max_trade_amount == 42


@pytest.mark.asyncio
async def test_run_starts_from_fresh_session_counters(base_config, session, fake_clock, mocker):
    session.total_executions = 4
    session.failure_count = 4
    session.cumulative_profit = -3.0
    bot = build_bot(base_config, [FakePriceSource('venue_x', {}), FakePriceSource('venue_y', {})], session, fake_clock)
    seen = []

    async def one_tick():
        seen.append(session.snapshot())
        bot.stop()

    mocker.patch.object(bot, 'perform_arbitrage_loop', side_effect=one_tick)

    await asyncio.wait_for(bot.run(), timeout=5)

    assert seen[0]['total_executions'] == 0
    assert seen[0]['failure_count'] == 0
    assert seen[0]['cumulative_profit'] == 0.0
