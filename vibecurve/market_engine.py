# vibecurve/market_engine.py
import asyncio
import logging
import statistics
import time
from typing import Dict, List, Optional, Tuple

import aiohttp
import ccxt.async_support as ccxt

from .errors import PriceUnavailable
from .models import SOL_MINT, Token, VenuePrice


class PriceVenue:
    """A source of per-venue token prices quoted in SOL."""
    name = "venue"

    async def fetch(self, token: Token) -> List[VenuePrice]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class DexScreenerVenue(PriceVenue):
    """
    Reads every Solana pool DexScreener knows for a token and reports one
    price per DEX, taken from that DEX's deepest SOL-quoted pool.
    """
    name = "dexscreener"

    def __init__(self, session: aiohttp.ClientSession, base_url: str, timeout: float = 8.0):
        self._session = session
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def fetch(self, token: Token) -> List[VenuePrice]:
        url = f"{self.base_url}/latest/dex/tokens/{token.mint}"
        try:
            async with self._session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise PriceUnavailable(self.name, f"HTTP {resp.status}")
                data = await resp.json()
        except (aiohttp.ClientError, ValueError) as e:
            raise PriceUnavailable(self.name, str(e)) from e

        if not isinstance(data, dict):
            raise PriceUnavailable(self.name, "unexpected response body")
        pairs = data.get('pairs') or []
        if not isinstance(pairs, list):
            raise PriceUnavailable(self.name, "pairs is not a list")
        return self.parse_pairs(token, pairs)

    @staticmethod
    def parse_pairs(token: Token, pairs: List[dict]) -> List[VenuePrice]:
        best: Dict[str, VenuePrice] = {}
        now = time.time()
        for pair in pairs:
            # malformed pairs are skipped, the rest of the body still counts
            try:
                if pair.get('chainId', 'solana') != 'solana':
                    continue
                base = (pair.get('baseToken') or {}).get('address')
                quote = (pair.get('quoteToken') or {}).get('address')
                liquidity = pair.get('liquidity') or {}
                native = float(pair.get('priceNative') or 0)
                if native <= 0:
                    continue

                # Price is always SOL per token; liquidity is the SOL side of the pool.
                if base == token.mint and quote == SOL_MINT:
                    price, depth = native, float(liquidity.get('quote') or 0)
                elif base == SOL_MINT and quote == token.mint:
                    price, depth = 1.0 / native, float(liquidity.get('base') or 0)
                else:
                    continue
            except (AttributeError, TypeError, ValueError):
                continue

            dex = pair.get('dexId', 'unknown')
            current = best.get(dex)
            if current is None or depth > current.liquidity:
                best[dex] = VenuePrice(venue=dex, price=price, liquidity=depth, timestamp=now)

        return list(best.values())


class CcxtVenue(PriceVenue):
    """
    Centralized exchange order book, converted to SOL terms through the
    exchange's own SOL/USDT book. Tokens without a listed symbol are not
    supported here and produce no price.
    """
    SOL_SYMBOL = "SOL/USDT"

    def __init__(self, exchange_id: str, logger: logging.Logger,
                 timeout_ms: int = 8000, depth: int = 20):
        self.name = exchange_id
        self.logger = logger
        self.depth = depth
        ex_class = getattr(ccxt, exchange_id)
        self.client = ex_class({
            'timeout': timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'}
        })
        self._markets_loaded = False

    async def _ensure_markets(self) -> None:
        if self._markets_loaded:
            return
        try:
            await self.client.load_markets()
        except ccxt.RequestTimeout as e:
            raise PriceUnavailable(self.name, f"TIMEOUT loading markets: {e}") from e
        except ccxt.ExchangeNotAvailable as e:
            raise PriceUnavailable(self.name, f"MAINTENANCE: {e}") from e
        except ccxt.BaseError as e:
            raise PriceUnavailable(self.name, f"load_markets failed: {e}") from e
        self._markets_loaded = True

    def supports(self, token: Token) -> bool:
        return bool(token.cex_symbol) and token.cex_symbol in self.client.markets \
            and self.SOL_SYMBOL in self.client.markets

    async def fetch(self, token: Token) -> List[VenuePrice]:
        if not token.cex_symbol:
            return []
        await self._ensure_markets()
        if not self.supports(token):
            self.logger.debug(f"{self.name.upper()}: {token.cex_symbol} not listed, skipping")
            return []

        try:
            book, sol_book = await asyncio.gather(
                self.client.fetch_order_book(token.cex_symbol, self.depth),
                self.client.fetch_order_book(self.SOL_SYMBOL, self.depth),
            )
        except ccxt.RequestTimeout as e:
            raise PriceUnavailable(self.name, f"TIMEOUT: {e}") from e
        except ccxt.BaseError as e:
            raise PriceUnavailable(self.name, str(e)) from e

        mid, depth_usd = self._book_stats(book)
        sol_mid, _ = self._book_stats(sol_book)
        if mid <= 0 or sol_mid <= 0:
            raise PriceUnavailable(self.name, "empty order book")

        return [VenuePrice(venue=self.name, price=mid / sol_mid, liquidity=depth_usd / sol_mid)]

    @staticmethod
    def _book_stats(book: dict) -> Tuple[float, float]:
        bids = book.get('bids') or []
        asks = book.get('asks') or []
        if not bids or not asks:
            return 0.0, 0.0
        mid = (bids[0][0] + asks[0][0]) / 2
        depth = sum(level[0] * level[1] for level in bids) + sum(level[0] * level[1] for level in asks)
        return mid, depth

    async def close(self) -> None:
        await self.client.close()


class PriceVenueClient:
    """
    Fans a price request out to every configured venue and caches the
    combined answer per token for a short TTL.
    A venue that fails is left out of the answer; it never fails the call.
    """
    def __init__(self, venues: List[PriceVenue], logger: logging.Logger,
                 cache_ttl: float = 5.0, timeout: float = 8.0):
        self.venues = venues
        self.logger = logger
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._cache: Dict[str, Tuple[float, List[VenuePrice]]] = {}

    async def get_prices(self, token: Token) -> List[VenuePrice]:
        cached = self._cache.get(token.mint)
        if cached and time.time() - cached[0] < self.cache_ttl:
            return cached[1]

        results = await asyncio.gather(
            *(self._fetch_one(v, token) for v in self.venues)
        )
        prices = [p for venue_prices in results for p in venue_prices]

        if prices:
            self._cache[token.mint] = (time.time(), prices)
        return prices

    async def _fetch_one(self, venue: PriceVenue, token: Token) -> List[VenuePrice]:
        try:
            return await asyncio.wait_for(venue.fetch(token), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"⚠️ {venue.name.upper()}: price request for {token.symbol} timed out")
        except PriceUnavailable as e:
            self.logger.warning(f"⚠️ {venue.name.upper()}: {token.symbol} unavailable ({e.reason})")
        except Exception as e:
            self.logger.warning(f"⚠️ {venue.name.upper()}: {token.symbol} fetch failed ({e!r})")
        return []

    async def get_price(self, token: Token, venue: Optional[str] = None) -> Optional[VenuePrice]:
        prices = await self.get_prices(token)
        for p in prices:
            if venue is None or p.venue == venue:
                return p
        return None

    async def reference_price(self, token: Token) -> Optional[float]:
        """Median across venues; None when no venue answered."""
        prices = await self.get_prices(token)
        if not prices:
            return None
        return statistics.median(p.price for p in prices)

    def invalidate(self, token: Optional[Token] = None) -> None:
        if token is None:
            self._cache.clear()
        else:
            self._cache.pop(token.mint, None)

    async def shutdown(self):
        """
        Gracefully closes all venue sessions.
        """
        for venue in self.venues:
            await venue.close()
