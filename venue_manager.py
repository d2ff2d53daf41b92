import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from config.logging_config import get_logger
from core.utils import ConfigError, VenueInitError
from data_models import AssetPair, FeeStructure, LiquiditySnapshot, PriceQuote, SwapReceipt, TransactionStatus


class PriceSource(ABC):
    """Read side of a venue: pool prices, fees and liquidity for asset pairs."""

    name: str = "unnamed"

    @abstractmethod
    async def initialize(self) -> bool:
        ...

    @abstractmethod
    async def get_price(self, pair: AssetPair) -> Optional[PriceQuote]:
        """Current price in units of B per unit of A, or None when the venue has no pool."""

    @abstractmethod
    def get_fee_structure(self) -> FeeStructure:
        ...

    @abstractmethod
    async def get_liquidity(self, pair: AssetPair) -> Optional[LiquiditySnapshot]:
        ...

    async def close(self) -> None:
        return None


class TradeExecutor(ABC):
    """Write side of a venue: submit swaps and report their status."""

    name: str = "unnamed"

    @abstractmethod
    async def submit_swap(self, asset_in: str, asset_out: str, amount_in: int, min_amount_out: int, pool_ref: Any) -> SwapReceipt:
        """Submits a swap; raises on any failure."""

    @abstractmethod
    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        ...


class VenueManager:
    """
    Registry of venues keyed by name. Abstracts the per-venue adapters so the
    scanner and executor never talk to a concrete client. Price fetches for one
    pair are issued concurrently, each bounded by ``timeout_s``.
    """

    def __init__(self, timeout_s: float = 10.0):
        self.timeout_s = float(timeout_s)
        self.price_sources: Dict[str, PriceSource] = {}
        self.trade_executors: Dict[str, TradeExecutor] = {}
        self.logger = get_logger(__name__)

    # ---------- Registration (configuration time) ----------

    def register(self, name: str, price_source: PriceSource, trade_executor: Optional[TradeExecutor] = None) -> None:
        if name in self.price_sources:
            raise ConfigError(f"Venue '{name}' registered twice.")
        self.price_sources[name] = price_source
        if trade_executor is not None:
            self.trade_executors[name] = trade_executor
        self.logger.info(f"Registered venue '{name}' (executor: {'yes' if trade_executor else 'no'})")

    def venue_names(self) -> List[str]:
        return list(self.price_sources.keys())

    def ensure_executors(self, venues: Optional[Iterable[str]] = None) -> None:
        """Live trading needs a TradeExecutor for every venue that can be picked as a leg."""
        missing = [v for v in (venues or self.venue_names()) if v not in self.trade_executors]
        if missing:
            raise ConfigError(f"No trade executor configured for venue(s): {', '.join(missing)}")

    async def initialize(self, min_venues: int = 2) -> None:
        """Initializes every price source; failures are dropped, but at least ``min_venues`` must remain."""
        names = list(self.price_sources.keys())
        results = await asyncio.gather(
            *(self._with_timeout(self.price_sources[n].initialize()) for n in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, Exception) or result is False:
                self.logger.warning(f"Venue '{name}' failed to initialize and is disabled: {result}")
                await self._close_quietly(self.price_sources.pop(name))
                self.trade_executors.pop(name, None)
        if len(self.price_sources) < min_venues:
            raise VenueInitError(f"Only {len(self.price_sources)} venue(s) initialized; need at least {min_venues}.")
        self.logger.info(f"Initialized {len(self.price_sources)} venues: {', '.join(self.price_sources)}")

    # ---------- Lookups ----------

    def get_price_source(self, venue: str) -> PriceSource:
        source = self.price_sources.get(venue)
        if source is None:
            raise ConfigError(f"Venue '{venue}' is not registered.")
        return source

    def get_trade_executor(self, venue: str) -> Optional[TradeExecutor]:
        return self.trade_executors.get(venue)

    def get_fee_structure(self, venue: str) -> FeeStructure:
        return self.get_price_source(venue).get_fee_structure()

    # ---------- Market data ----------

    async def get_quote(self, venue: str, pair: AssetPair) -> Optional[PriceQuote]:
        """One venue's quote; errors and timeouts are logged and reported as None."""
        try:
            quote = await self._with_timeout(self.get_price_source(venue).get_price(pair))
        except asyncio.TimeoutError:
            self.logger.warning(f"{venue}: price request for {pair} timed out after {self.timeout_s}s",
                                extra={'venue': venue, 'pair': pair})
            return None
        except Exception as e:
            self.logger.warning(f"{venue}: no price available for {pair}: {e}", extra={'venue': venue, 'pair': pair})
            return None
        if quote is None:
            self.logger.debug(f"{venue}: no pool for {pair}")
            return None
        if quote.price is None or quote.price <= 0:
            self.logger.warning(f"{venue}: ignoring non-positive price {quote.price} for {pair}")
            return None
        return quote

    async def get_all_prices(self, pair: AssetPair, venues: Optional[Iterable[str]] = None) -> List[PriceQuote]:
        names = list(venues) if venues is not None else self.venue_names()
        results = await asyncio.gather(*(self.get_quote(name, pair) for name in names))
        return [q for q in results if q is not None]

    async def get_all_liquidity(self, pair: AssetPair) -> List[LiquiditySnapshot]:
        snapshots = []
        for name, source in self.price_sources.items():
            try:
                snapshot = await self._with_timeout(source.get_liquidity(pair))
            except Exception as e:
                self.logger.info(f"{name}: no liquidity data for {pair}: {e}")
                continue
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    # ---------- Lifecycle ----------

    async def close(self) -> None:
        self.logger.info("Closing all venue connections...")
        for source in self.price_sources.values():
            await self._close_quietly(source)
        for name, executor in self.trade_executors.items():
            if executor not in self.price_sources.values() and hasattr(executor, "close"):
                await self._close_quietly(executor)
        self.logger.info("All venue connections closed.")

    async def _with_timeout(self, coro):
        return await asyncio.wait_for(coro, timeout=self.timeout_s)

    async def _close_quietly(self, venue: Any) -> None:
        try:
            await venue.close()
        except Exception as e:
            self.logger.warning(f"Error while closing venue {getattr(venue, 'name', venue)}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'total_venues': len(self.price_sources),
            'venues': self.venue_names(),
            'executable_venues': list(self.trade_executors.keys()),
        }
