"""Read-only price source for DEX venues that publish their pools as JSON over HTTP."""
import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx

from config.logging_config import get_logger
from core.utils import VenueError
from data_models import AssetPair, FeeStructure, LiquiditySnapshot, PriceQuote
from venue_manager import PriceSource


class HttpPoolPriceSource(PriceSource):
    """
    Fetches ``url`` and reads a list of pools, either the top-level JSON array or
    the list under ``pools_key``. Each pool needs an id, the two asset ids and
    their raw reserves (smallest units); field names are configurable.

    The pool list is cached for ``cache_ttl_s`` so one scan over many pairs
    costs a single request.
    """

    DEFAULT_FIELDS = {
        'id': 'id',
        'asset_a': 'asset_a',
        'asset_b': 'asset_b',
        'reserve_a': 'reserve_a',
        'reserve_b': 'reserve_b',
    }

    def __init__(self, name: str, url: str, fees: FeeStructure, timeout_s: float = 10.0, cache_ttl_s: float = 5.0,
                 pools_key: Optional[str] = None, fields: Optional[Dict[str, str]] = None,
                 headers: Optional[Dict[str, str]] = None, client: Optional[httpx.AsyncClient] = None):
        self.name = name
        self.url = url
        self.fees = fees
        self.timeout_s = timeout_s
        self.cache_ttl_s = cache_ttl_s
        self.pools_key = pools_key
        self.fields = dict(self.DEFAULT_FIELDS, **(fields or {}))
        self.headers = headers or {}
        self.logger = get_logger(__name__)
        self._client = client
        self._pools: List[Dict[str, Any]] = []
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    async def initialize(self) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, headers=self.headers)
        pools = await self._get_pools(force=True)
        self.logger.info(f"{self.name}: {len(pools)} pools available at {self.url}")
        return True

    async def _get_pools(self, force: bool = False) -> List[Dict[str, Any]]:
        async with self._lock:
            if not force and self._pools and time.monotonic() - self._fetched_at < self.cache_ttl_s:
                return self._pools
            try:
                response = await self._client.get(self.url)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise VenueError(f"pool list request failed: {e}", venue=self.name)

            pools = payload.get(self.pools_key, []) if self.pools_key else payload
            if not isinstance(pools, list):
                raise VenueError(f"unexpected pool payload of type {type(pools).__name__}", venue=self.name)
            self._pools = pools
            self._fetched_at = time.monotonic()
            return self._pools

    def _find_pool(self, pools: List[Dict[str, Any]], pair: AssetPair):
        """Deepest pool trading the pair in either direction, as (pool, reserve_a, reserve_b)."""
        f = self.fields
        best = None
        for pool in pools:
            try:
                pool_a, pool_b = pool[f['asset_a']], pool[f['asset_b']]
                raw_a, raw_b = float(pool[f['reserve_a']]), float(pool[f['reserve_b']])
            except (KeyError, TypeError, ValueError):
                continue
            if not pair.matches(AssetPair(pool_a, pool_b)):
                continue
            reserve_a, reserve_b = (raw_a, raw_b) if pool_a == pair.asset_a else (raw_b, raw_a)
            if reserve_a <= 0 or reserve_b <= 0:
                continue
            if best is None or reserve_b > best[2]:
                best = (pool, reserve_a, reserve_b)
        return best

    async def get_price(self, pair: AssetPair) -> Optional[PriceQuote]:
        found = self._find_pool(await self._get_pools(), pair)
        if found is None:
            return None
        pool, raw_a, raw_b = found
        reserve_a = raw_a / (10 ** pair.decimals_a)
        reserve_b = raw_b / (10 ** pair.decimals_b)
        return PriceQuote(
            venue=self.name,
            pair=pair,
            price=reserve_b / reserve_a,
            reserve_a=reserve_a,
            reserve_b=reserve_b,
            pool_ref={'id': pool.get(self.fields['id']), 'pool': pool},
            observed_at=time.time(),
        )

    def get_fee_structure(self) -> FeeStructure:
        return self.fees

    async def get_liquidity(self, pair: AssetPair) -> Optional[LiquiditySnapshot]:
        quote = await self.get_price(pair)
        if quote is None:
            return None
        return LiquiditySnapshot(venue=self.name, pair=pair, amount_a=quote.reserve_a, amount_b=quote.reserve_b)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
