import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from arbitrage_executor import ArbitrageExecutor
from bot_engine import ArbitrageBot
from ccxt_venue import CcxtVenue
from config.logging_config import get_logger, setup_logging
from core.utils import ArbitrageBotError, ConfigError, apply_env_overrides, load_config
from cost_model import build_slippage_model
from data_models import ExecutorSession, FeeStructure
from http_pool_source import HttpPoolPriceSource
from opportunity_scanner import OpportunityScanner
from performance_analyzer import PerformanceAnalyzer, format_kpis, summarize_opportunities
from risk_manager import RiskManager
from trade_ledger import JsonLinesLedger
from venue_manager import VenueManager

logger = get_logger(__name__)


def build_venue_manager(config: Dict[str, Any]) -> VenueManager:
    """Registers one venue per entry under ``venues``; the ``type`` picks the adapter."""
    params = config.get('trading_parameters', {})
    timeout_s = float(params.get('venue_timeout_s', 10))
    manager = VenueManager(timeout_s=timeout_s)

    for name, venue_cfg in config['venues'].items():
        fees = FeeStructure.from_dict(venue_cfg.get('fees', {}))
        venue_type = venue_cfg['type']
        if venue_type == 'ccxt':
            venue = CcxtVenue(
                name=name,
                exchange_id=venue_cfg.get('exchange_id', name),
                fees=fees,
                credentials=venue_cfg.get('credentials'),
                sandbox=bool(venue_cfg.get('sandbox', False)),
                order_book_depth=int(venue_cfg.get('order_book_depth', 20)),
            )
            manager.register(name, venue, venue)
        elif venue_type == 'http_pool':
            if 'url' not in venue_cfg:
                raise ConfigError(f"Venue '{name}' of type http_pool needs a 'url'.")
            venue = HttpPoolPriceSource(
                name=name,
                url=venue_cfg['url'],
                fees=fees,
                timeout_s=timeout_s,
                cache_ttl_s=float(venue_cfg.get('cache_ttl_s', 5)),
                pools_key=venue_cfg.get('pools_key'),
                fields=venue_cfg.get('fields'),
                headers=venue_cfg.get('headers'),
            )
            manager.register(name, venue)
        else:
            raise ConfigError(f"Venue '{name}' has unknown type '{venue_type}' (expected 'ccxt' or 'http_pool').")
    return manager


def build_ledgers(config: Dict[str, Any]):
    ledger_cfg = config.get('ledger', {}) or {}
    directory = ledger_cfg.get('directory', 'data')
    opportunities = JsonLinesLedger(os.path.join(directory, ledger_cfg.get('opportunities_file', 'opportunities.jsonl')))
    executions = JsonLinesLedger(os.path.join(directory, ledger_cfg.get('executions_file', 'executions.jsonl')))
    return opportunities, executions


def build_bot(config: Dict[str, Any], venue_manager: Optional[VenueManager] = None) -> ArbitrageBot:
    """Wires every component the controller needs from a validated config."""
    venue_manager = venue_manager or build_venue_manager(config)
    opportunity_ledger, execution_ledger = build_ledgers(config)
    session = ExecutorSession()
    scanner = OpportunityScanner(
        venue_manager,
        config,
        slippage_model=build_slippage_model(config.get('slippage_model')),
        ledger=opportunity_ledger,
    )
    executor = ArbitrageExecutor(session, venue_manager, config, ledger=execution_ledger, scanner=scanner)
    risk_manager = RiskManager(config)
    return ArbitrageBot(config, venue_manager, scanner, executor, risk_manager, session)


# ---------- Commands ----------

async def run_bot(config: Dict[str, Any], single_tick: bool = False) -> None:
    bot = None
    try:
        bot = build_bot(config)
        await bot.initialize()
        if not single_tick:
            await bot.run()
            return

        await bot.perform_arbitrage_loop()
        if not bot.last_opportunities:
            print("No profitable opportunities found.")
        for opportunity in bot.last_opportunities:
            print(f"{opportunity.pair}: buy {opportunity.buy_venue} @ {opportunity.buy_price:.6f}, "
                  f"sell {opportunity.sell_venue} @ {opportunity.sell_price:.6f}, "
                  f"net {opportunity.net_profit_percent:.2f}%")
    finally:
        if bot is not None:
            await bot.venue_manager.close()


def show_stats(config: Dict[str, Any]) -> None:
    opportunity_ledger, execution_ledger = build_ledgers(config)
    analyzer = PerformanceAnalyzer.from_ledger(execution_ledger)
    currency = (config['trading_parameters']['pairs'][0] or {}).get('asset_b', '')

    print("=== Execution performance ===")
    for label, value in format_kpis(analyzer.calculate_kpis(), currency).items():
        print(f"{label:<22} {value}")

    summary = summarize_opportunities(opportunity_ledger.query())
    print("=== Opportunities ===")
    print(f"{'Total recorded':<22} {summary['total']}")
    print(f"{'Last hour':<22} {summary['last_hour']}")
    print(f"{'Last 24h':<22} {summary['last_24h']}")
    print(f"{'Average net (%)':<22} {summary['average_net_profit_percent']:.2f}")
    print(f"{'Best net (%)':<22} {summary['max_net_profit_percent']:.2f}")


def show_opportunities(config: Dict[str, Any], limit: int) -> None:
    opportunity_ledger, _ = build_ledgers(config)
    records = opportunity_ledger.query(limit=limit)
    if not records:
        print("No opportunities recorded yet.")
    for r in records:
        print(f"{r.get('pair')}: buy {r.get('buy_venue')} @ {float(r.get('buy_price', 0)):.6f}, "
              f"sell {r.get('sell_venue')} @ {float(r.get('sell_price', 0)):.6f}, "
              f"net {float(r.get('net_profit_percent', 0)):.2f}%")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Cross-venue DEX arbitrage bot")
    parser.add_argument('--config', default=None, help="Path to config.yaml (default: config/config.yaml)")
    parser.add_argument('--env-file', default=None, help="Path to the .env file")
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('start', help="Run the scan/execute loop until stopped")
    scan = sub.add_parser('scan', help="Run a single tick, executing as configured, and print the opportunities found")
    scan.add_argument('--no-execute', action='store_true', help="Only report opportunities; never execute")
    sub.add_parser('stats', help="Show execution KPIs and opportunity counts from the ledgers")
    opps = sub.add_parser('opportunities', help="Show the most recent recorded opportunities")
    opps.add_argument('limit', nargs='?', type=int, default=10)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = apply_env_overrides(load_config(args.config), args.env_file)
    except ConfigError as e:
        setup_logging(log_dir=None)
        logger.error(f"Configuration Error: {e}")
        return 1

    log_cfg = config.get('logging', {}) or {}
    setup_logging(level=log_cfg.get('level', 'INFO'), log_dir=log_cfg.get('directory', 'logs'))

    try:
        if args.command == 'start':
            asyncio.run(run_bot(config))
        elif args.command == 'scan':
            if args.no_execute:
                config['trading_parameters']['auto_execution_enabled'] = False
            asyncio.run(run_bot(config, single_tick=True))
        elif args.command == 'stats':
            show_stats(config)
        elif args.command == 'opportunities':
            show_opportunities(config, args.limit)
    except KeyboardInterrupt:
        logger.info("Shutdown signal received (Ctrl+C). Exiting gracefully.")
    except ccxt.AuthenticationError as e:
        logger.error(f"Authentication Failed: {e}. Please check your API keys and permissions.")
        return 1
    except ArbitrageBotError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.error(f"An unexpected error occurred: {e}", exc_info=True)
        return 1
    finally:
        logging.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
