import time
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from config.logging_config import get_logger
from core.utils import VenueError, VenueInitError, retry_ccxt_call
from data_models import AssetPair, FeeStructure, LiquiditySnapshot, PriceQuote, SwapReceipt, TransactionStatus
from venue_manager import PriceSource, TradeExecutor


class CcxtVenue(PriceSource, TradeExecutor):
    """
    A venue reachable through ccxt's async client. Quotes come from the ticker
    (last trade, falling back to the bid/ask midpoint), swaps are market orders.

    The pool reference handed to the scanner is a dict describing the market,
    so the executor can convert smallest-unit amounts without another lookup.
    """

    def __init__(self, name: str, exchange_id: str, fees: FeeStructure, credentials: Optional[Dict[str, str]] = None,
                 sandbox: bool = False, order_book_depth: int = 20, exchange: Any = None):
        self.name = name
        self.exchange_id = exchange_id
        self.fees = fees
        self.order_book_depth = order_book_depth
        self.logger = get_logger(__name__)
        self._orders: Dict[str, Dict[str, Any]] = {}

        if exchange is not None:
            self.exchange = exchange
            return
        try:
            exchange_class = getattr(ccxt, exchange_id)
        except AttributeError:
            raise VenueInitError(f"Exchange '{exchange_id}' is not supported by ccxt.")

        params = {'enableRateLimit': True, 'options': {'defaultType': 'spot'}}
        params.update(credentials or {})
        self.exchange = exchange_class(params)
        if sandbox:
            try:
                self.exchange.set_sandbox_mode(True)
                self.logger.info(f"'{name}' set to sandbox mode.")
            except ccxt.NotSupported:
                self.logger.warning(f"Exchange '{exchange_id}' does not support set_sandbox_mode().")

    async def initialize(self) -> bool:
        await self._load_markets()
        self.logger.info(f"{self.name}: loaded {len(self.exchange.markets or {})} markets from {self.exchange_id}")
        return True

    @retry_ccxt_call()
    async def _load_markets(self):
        return await self.exchange.load_markets()

    @retry_ccxt_call()
    async def _fetch_ticker(self, symbol: str):
        return await self.exchange.fetch_ticker(symbol)

    @retry_ccxt_call()
    async def _fetch_order_book(self, symbol: str):
        return await self.exchange.fetch_order_book(symbol, self.order_book_depth)

    @retry_ccxt_call()
    async def _fetch_order(self, order_id: str, symbol: str):
        return await self.exchange.fetch_order(order_id, symbol)

    # ---------- PriceSource ----------

    def _resolve_market(self, pair: AssetPair):
        """Returns (symbol, inverted) for the pair, or (None, False) when the exchange does not list it."""
        markets = self.exchange.markets or {}
        if pair.symbol in markets:
            return pair.symbol, False
        if pair.reversed().symbol in markets:
            return pair.reversed().symbol, True
        return None, False

    async def get_price(self, pair: AssetPair) -> Optional[PriceQuote]:
        symbol, inverted = self._resolve_market(pair)
        if symbol is None:
            return None
        try:
            ticker = await self._fetch_ticker(symbol)
        except ccxt.BaseError as e:
            raise VenueError(f"ticker request for {symbol} failed: {e}", venue=self.name)

        price = ticker.get('last')
        if not price and ticker.get('bid') and ticker.get('ask'):
            price = (ticker['bid'] + ticker['ask']) / 2
        if not price:
            return None
        if inverted:
            price = 1.0 / price

        pool_ref = {
            'id': symbol,
            'symbol': symbol,
            'inverted': inverted,
            'asset_a': pair.asset_a,
            'asset_b': pair.asset_b,
            'decimals_a': pair.decimals_a,
            'decimals_b': pair.decimals_b,
            'reference_price': price,
        }
        observed = ticker.get('timestamp')
        return PriceQuote(
            venue=self.name,
            pair=pair,
            price=float(price),
            pool_ref=pool_ref,
            observed_at=observed / 1000.0 if observed else time.time(),
        )

    def get_fee_structure(self) -> FeeStructure:
        return self.fees

    async def get_liquidity(self, pair: AssetPair) -> Optional[LiquiditySnapshot]:
        symbol, inverted = self._resolve_market(pair)
        if symbol is None:
            return None
        book = await self._fetch_order_book(symbol)
        base_depth = sum(amount for _, amount in book.get('asks', []))
        quote_depth = sum(price * amount for price, amount in book.get('bids', []))
        if inverted:
            base_depth, quote_depth = quote_depth, base_depth
        return LiquiditySnapshot(venue=self.name, pair=pair, amount_a=base_depth, amount_b=quote_depth)

    # ---------- TradeExecutor ----------

    async def submit_swap(self, asset_in: str, asset_out: str, amount_in: int, min_amount_out: int, pool_ref: Any) -> SwapReceipt:
        if not isinstance(pool_ref, dict) or 'symbol' not in pool_ref:
            raise VenueError(f"pool reference {pool_ref!r} is not a ccxt market", venue=self.name)

        symbol = pool_ref['symbol']
        base, quote = symbol.split('/')
        decimals = {pool_ref['asset_a']: pool_ref['decimals_a'], pool_ref['asset_b']: pool_ref['decimals_b']}
        amount = amount_in / (10 ** decimals[asset_in])

        if asset_in == quote and asset_out == base:
            side = 'buy'
            # Market buys are sized in base units; convert the quote amount at the last known price.
            market_price = pool_ref['reference_price'] if not pool_ref['inverted'] else 1.0 / pool_ref['reference_price']
            order_amount = amount / market_price
        elif asset_in == base and asset_out == quote:
            side = 'sell'
            order_amount = amount
        else:
            raise VenueError(f"{asset_in}->{asset_out} does not match market {symbol}", venue=self.name)

        order_amount = float(self.exchange.amount_to_precision(symbol, order_amount))
        self.logger.trade(f"{self.name}: placing market {side} for {order_amount} {base} on {symbol}")
        try:
            order = await self.exchange.create_order(symbol, 'market', side, order_amount)
        except ccxt.BaseError as e:
            raise VenueError(f"{side} order on {symbol} failed: {e}", venue=self.name)

        self._orders[order['id']] = {'symbol': symbol, 'side': side, 'asset_out': asset_out,
                                     'decimals_out': decimals[asset_out]}
        amount_out = self._amount_out(order, self._orders[order['id']])
        if amount_out is not None and amount_out < min_amount_out:
            self.logger.warning(f"{self.name}: order {order['id']} filled {amount_out} below minimum {min_amount_out}")
        return SwapReceipt(tx_ref=order['id'], amount_out=amount_out)

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        meta = self._orders.get(tx_ref)
        if meta is None:
            raise VenueError(f"unknown order {tx_ref}", venue=self.name)
        order = await self._fetch_order(tx_ref, meta['symbol'])
        if order.get('status') != 'closed':
            return TransactionStatus(confirmed=False)
        self._orders.pop(tx_ref, None)
        return TransactionStatus(confirmed=True, amount_out=self._amount_out(order, meta))

    @staticmethod
    def _amount_out(order: Dict[str, Any], meta: Dict[str, Any]) -> Optional[int]:
        # Buys receive the filled base amount, sells receive the quote cost.
        received = order.get('filled') if meta['side'] == 'buy' else order.get('cost')
        if received is None:
            return None
        return int(round(received * (10 ** meta['decimals_out'])))

    async def close(self) -> None:
        await self.exchange.close()
