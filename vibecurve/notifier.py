# vibecurve/notifier.py
import asyncio
import logging
from typing import Optional, Set

import aiohttp

from .models import ArbitrageOpportunity, ArbitrageResult, OrderResult


class TelegramNotifier:
    """
    Fire-and-forget Telegram alerts. Sending never blocks or fails the
    caller; without a bot token every call is a no-op.
    """
    def __init__(self, session: Optional[aiohttp.ClientSession], token: Optional[str],
                 chat_id: Optional[str], logger: logging.Logger,
                 base_url: str = "https://api.telegram.org", timeout: float = 10.0,
                 enabled: bool = True):
        self._session = session
        self.token = token
        self.chat_id = chat_id
        self.logger = logger
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._enabled = enabled
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.token and self.chat_id and self._session)

    def notify(self, text: str) -> None:
        if not self.enabled:
            return
        task = asyncio.create_task(self._send(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, text: str) -> None:
        url = f"{self.base_url}/bot{self.token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML",
                   "disable_web_page_preview": True}
        try:
            async with self._session.post(url, json=payload, timeout=self.timeout) as resp:
                if resp.status != 200:
                    self.logger.debug(f"Telegram sendMessage HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Telegram sendMessage failed: {e}")

    def notify_opportunity(self, opp: ArbitrageOpportunity) -> None:
        self.notify(
            f"💎 <b>{opp.token.symbol}</b> spread {opp.spread_pct:.2f}% ({opp.confidence.value})\n"
            f"Buy {opp.buy_venue} @ {opp.buy_price:.10f}\n"
            f"Sell {opp.sell_venue} @ {opp.sell_price:.10f}\n"
            f"Est. profit {opp.estimated_profit:.10f} SOL/token | Liq {opp.liquidity:.1f} SOL"
        )

    def notify_arbitrage(self, result: ArbitrageResult) -> None:
        status = "✅ executed" if result.success else f"❌ failed: {result.error}"
        self.notify(f"⚡ <b>{result.opportunity.token.symbol}</b> arbitrage {status}\n"
                    f"Net {result.net_profit:+.6f} SOL in {result.elapsed_ms:.0f} ms")

    def notify_order(self, label: str, result: OrderResult) -> None:
        if result.success:
            self.notify(f"✅ {label}: {result.direction.value} {result.amount:.6f} -> "
                        f"{result.filled_amount:.6f} @ {result.fill_price:.10f}")
        else:
            risk = f" | {result.at_risk_amount:.6f} at risk" if result.at_risk_amount else ""
            self.notify(f"❌ {label}: {result.direction.value} failed "
                        f"[{result.error_code.value if result.error_code else '?'}] {result.error}{risk}")

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
