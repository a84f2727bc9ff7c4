# vibecurve/execution.py
import asyncio
import base64
import logging
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from .config import PipelineConfig, apply_updates
from .errors import (
    BundleRejected, BundleTimeout, ExecutionError, QuoteFailed,
    SubmissionFailed, TransactionBuildFailed,
)
from .models import SOL, Direction, ErrorCode, OrderResult, Token


@dataclass(slots=True)
class Quote:
    in_amount: int
    out_amount: int
    route: List[str] = field(default_factory=list)
    fee_estimate: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(slots=True)
class RelayStatus:
    """confirmed=False with no errors means still pending."""
    confirmed: bool
    slot: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> bool:
        return not self.confirmed and bool(self.errors)


class Wallet:
    """Holds the signing keypair. The secret never leaves this object."""
    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> 'Wallet':
        return cls(Keypair.from_base58_string(secret))

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def keypair(self) -> Keypair:
        return self._keypair

    def sign(self, unsigned: bytes) -> VersionedTransaction:
        tx = VersionedTransaction.from_bytes(unsigned)
        return VersionedTransaction(tx.message, [self._keypair])


def encode_tx(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode('ascii')


async def json_rpc(session: aiohttp.ClientSession, url: str, method: str,
                   params: list, timeout: float) -> Any:
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
        if resp.status != 200:
            raise SubmissionFailed(f"{method}: HTTP {resp.status}")
        body = await resp.json()
    if body.get('error'):
        raise SubmissionFailed(f"{method}: {body['error']}")
    return body.get('result')


class JupiterClient:
    """Quote and swap-transaction builder backed by the Jupiter HTTP API."""
    def __init__(self, session: aiohttp.ClientSession, quote_url: str, swap_url: str,
                 timeout: float = 10.0):
        self._session = session
        self.quote_url = quote_url
        self.swap_url = swap_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def get_quote(self, input_mint: str, output_mint: str, amount: int,
                        slippage_bps: int) -> Quote:
        params = {
            'inputMint': input_mint,
            'outputMint': output_mint,
            'amount': str(amount),
            'slippageBps': str(slippage_bps),
        }
        try:
            async with self._session.get(self.quote_url, params=params, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise QuoteFailed(f"Jupiter quote HTTP {resp.status}: {await resp.text()}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise QuoteFailed(f"Jupiter quote request failed: {e}") from e

        if 'outAmount' not in data:
            raise QuoteFailed(f"Jupiter quote has no outAmount: {data.get('error', data)}")

        route = [leg.get('swapInfo', {}).get('label', '?') for leg in data.get('routePlan', [])]
        fees = sum(int(leg.get('swapInfo', {}).get('feeAmount', 0) or 0) for leg in data.get('routePlan', []))
        return Quote(in_amount=int(data.get('inAmount', amount)), out_amount=int(data['outAmount']),
                     route=route, fee_estimate=float(fees), raw=data)

    async def build_swap(self, quote: Quote, user_pubkey: str) -> bytes:
        body = {
            'quoteResponse': quote.raw,
            'userPublicKey': user_pubkey,
            'wrapAndUnwrapSol': True,
        }
        try:
            async with self._session.post(self.swap_url, json=body, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise TransactionBuildFailed(f"Jupiter swap HTTP {resp.status}: {await resp.text()}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise TransactionBuildFailed(f"Jupiter swap request failed: {e}") from e

        encoded = data.get('swapTransaction')
        if not encoded:
            raise TransactionBuildFailed(f"Jupiter swap returned no transaction: {data.get('error', data)}")
        return base64.b64decode(encoded)


class Relay:
    name = "relay"

    async def submit(self, signed_txs: List[VersionedTransaction], tip_lamports: int) -> str:
        raise NotImplementedError

    async def get_status(self, relay_id: str) -> RelayStatus:
        raise NotImplementedError


class JitoRelay(Relay):
    """
    Submits transactions as a Jito bundle, appending a tip transfer to a
    random tip account. The tip reuses the swap's blockhash so both land
    or expire together.
    """
    name = "jito"
    TIP_CACHE_TTL = 300.0

    def __init__(self, session: aiohttp.ClientSession, url: str, wallet: Wallet,
                 logger: logging.Logger, timeout: float = 10.0):
        self._session = session
        self.url = url
        self.wallet = wallet
        self.logger = logger
        self.timeout = timeout
        self._tip_accounts: List[str] = []
        self._tip_fetched = 0.0

    async def get_tip_accounts(self) -> List[str]:
        if self._tip_accounts and time.time() - self._tip_fetched < self.TIP_CACHE_TTL:
            return self._tip_accounts
        accounts = await json_rpc(self._session, self.url, "getTipAccounts", [], self.timeout)
        if not accounts:
            raise SubmissionFailed("Jito returned no tip accounts")
        self._tip_accounts = list(accounts)
        self._tip_fetched = time.time()
        return self._tip_accounts

    async def build_tip(self, lamports: int, recent_blockhash) -> VersionedTransaction:
        tip_account = random.choice(await self.get_tip_accounts())
        ix = transfer(TransferParams(
            from_pubkey=self.wallet.pubkey,
            to_pubkey=Pubkey.from_string(tip_account),
            lamports=lamports,
        ))
        msg = MessageV0.try_compile(
            payer=self.wallet.pubkey,
            instructions=[ix],
            address_lookup_table_accounts=[],
            recent_blockhash=recent_blockhash,
        )
        return VersionedTransaction(msg, [self.wallet.keypair])

    async def submit(self, signed_txs: List[VersionedTransaction], tip_lamports: int) -> str:
        bundle = list(signed_txs)
        if tip_lamports > 0:
            bundle.append(await self.build_tip(tip_lamports, signed_txs[0].message.recent_blockhash))
        encoded = [encode_tx(tx) for tx in bundle]
        bundle_id = await json_rpc(self._session, self.url, "sendBundle",
                                   [encoded, {"encoding": "base64"}], self.timeout)
        if not bundle_id:
            raise SubmissionFailed("sendBundle returned no bundle id")
        self.logger.info(f"🚀 JITO: bundle submitted {bundle_id[:16]}...")
        return bundle_id

    async def get_status(self, relay_id: str) -> RelayStatus:
        result = await json_rpc(self._session, self.url, "getInflightBundleStatuses",
                                [[relay_id]], self.timeout)
        values = (result or {}).get('value') or []
        if not values:
            return RelayStatus(confirmed=False)
        state = values[0].get('status', '')
        if state == "Landed":
            return RelayStatus(confirmed=True, slot=values[0].get('landed_slot'))
        if state in ("Failed", "Invalid"):
            return RelayStatus(confirmed=False, errors=[f"bundle {state.lower()}"])
        return RelayStatus(confirmed=False)


class RpcRelay(Relay):
    """Plain sendTransaction against a Solana RPC node. Tips are not used."""
    name = "rpc"

    def __init__(self, session: aiohttp.ClientSession, url: str, timeout: float = 10.0):
        self._session = session
        self.url = url
        self.timeout = timeout

    async def submit(self, signed_txs: List[VersionedTransaction], tip_lamports: int) -> str:
        signature = None
        for tx in signed_txs:
            signature = await json_rpc(self._session, self.url, "sendTransaction",
                                       [encode_tx(tx), {"encoding": "base64"}], self.timeout)
        if not signature:
            raise SubmissionFailed("sendTransaction returned no signature")
        return signature

    async def get_status(self, relay_id: str) -> RelayStatus:
        result = await json_rpc(self._session, self.url, "getSignatureStatuses",
                                [[relay_id], {"searchTransactionHistory": True}], self.timeout)
        values = (result or {}).get('value') or [None]
        status = values[0]
        if status is None:
            return RelayStatus(confirmed=False)
        if status.get('err') is not None:
            return RelayStatus(confirmed=False, slot=status.get('slot'), errors=[str(status['err'])])
        if status.get('confirmationStatus') in ("confirmed", "finalized"):
            return RelayStatus(confirmed=True, slot=status.get('slot'))
        return RelayStatus(confirmed=False)


class OrderPipeline:
    """
    quote -> build -> sign -> submit -> confirm, for one swap against SOL.
    Never raises: every failure becomes an OrderResult with an ErrorCode,
    and any failure after a submission attempt reports the whole amount at risk.
    No retries here; callers decide whether a failure is worth retrying.
    """
    def __init__(self, quotes: JupiterClient, relay: Optional[Relay], wallet: Optional[Wallet],
                 config: PipelineConfig, logger: logging.Logger, dry_run: bool = True):
        self.quotes = quotes
        self.relay = relay
        self.wallet = wallet
        self.cfg = config
        self.logger = logger
        self.dry_run = dry_run

    async def execute(self, token: Token, amount: float, direction: Direction) -> OrderResult:
        start = time.time()
        if direction == Direction.BUY:
            input_token, output_token = SOL, token
        else:
            input_token, output_token = token, SOL

        submitted = False
        relay_id = None
        try:
            atomic = input_token.to_atomic(amount)
            try:
                quote = await asyncio.wait_for(
                    self.quotes.get_quote(input_token.mint, output_token.mint, atomic, self.cfg.slippage_bps),
                    timeout=self.cfg.quote_timeout,
                )
            except asyncio.TimeoutError as e:
                raise QuoteFailed(f"quote timed out after {self.cfg.quote_timeout}s") from e

            filled = output_token.from_atomic(quote.out_amount)
            fill_price = self._fill_price(direction, amount, filled)

            if self.dry_run:
                self.logger.info(
                    f"🔵 DRY RUN: {direction.value} {token.symbol} | in {amount:.6f} {input_token.symbol} "
                    f"-> out {filled:.6f} {output_token.symbol}"
                )
                return OrderResult(success=True, token=token.mint, direction=direction, amount=amount,
                                   filled_amount=filled, fill_price=fill_price, simulated=True,
                                   elapsed_ms=(time.time() - start) * 1000)

            if self.wallet is None or self.relay is None:
                raise TransactionBuildFailed("live execution requires a wallet and a relay")

            try:
                unsigned = await self.quotes.build_swap(quote, str(self.wallet.pubkey))
                signed = self.wallet.sign(unsigned)
            except TransactionBuildFailed:
                raise
            except Exception as e:
                raise TransactionBuildFailed(f"could not build swap: {e}") from e

            self.logger.info(f"⚡ SUBMIT: {direction.value} {token.symbol} {amount:.6f} via {self.relay.name}")
            submitted = True
            try:
                relay_id = await asyncio.wait_for(
                    self.relay.submit([signed], self.cfg.tip_lamports if self.cfg.use_bundle else 0),
                    timeout=self.cfg.submit_timeout,
                )
            except SubmissionFailed:
                raise
            except Exception as e:
                raise SubmissionFailed(f"submission failed: {e}") from e

            await self._confirm(relay_id)

            self.logger.info(f"✅ LANDED: {direction.value} {token.symbol} | {relay_id[:16]}...")
            return OrderResult(success=True, token=token.mint, direction=direction, amount=amount,
                               filled_amount=filled, fill_price=fill_price, relay_id=relay_id,
                               elapsed_ms=(time.time() - start) * 1000)

        except ExecutionError as e:
            return self._failure(token, direction, amount, e.code, str(e),
                                 submitted or e.funds_at_risk, start, relay_id=relay_id)
        except Exception as e:
            self.logger.exception(f"Unexpected pipeline failure for {token.symbol}")
            return self._failure(token, direction, amount, ErrorCode.UNKNOWN, str(e), submitted, start,
                                 relay_id=relay_id)

    async def _confirm(self, relay_id: str) -> None:
        for attempt in range(self.cfg.confirm_attempts):
            try:
                status = await self.relay.get_status(relay_id)
            except (ExecutionError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.logger.debug(f"status poll {attempt + 1} for {relay_id[:16]} failed: {e!r}")
                status = RelayStatus(confirmed=False)

            if status.confirmed:
                return
            if status.rejected:
                raise BundleRejected(relay_id, status.errors)
            await asyncio.sleep(self.cfg.poll_interval)
        raise BundleTimeout(f"{relay_id} not confirmed after {self.cfg.confirm_attempts} polls")

    def _failure(self, token: Token, direction: Direction, amount: float, code: ErrorCode,
                 message: str, submitted: bool, start: float,
                 relay_id: Optional[str] = None) -> OrderResult:
        at_risk = amount if submitted else 0.0
        log = self.logger.error if submitted else self.logger.warning
        log(f"⚠️ ORDER FAILED: {direction.value} {token.symbol} [{code.value}] {message}"
            + (f" | {at_risk:.6f} at risk" if at_risk else ""))
        return OrderResult(success=False, token=token.mint, direction=direction, amount=amount,
                           relay_id=relay_id, error_code=code, error=message, at_risk_amount=at_risk,
                           elapsed_ms=(time.time() - start) * 1000)

    @staticmethod
    def _fill_price(direction: Direction, amount: float, filled: float) -> float:
        """SOL per token, whichever way the swap went."""
        if direction == Direction.BUY:
            return amount / filled if filled else 0.0
        return filled / amount if amount else 0.0

    def update_config(self, **updates) -> None:
        self.cfg = apply_updates(self.cfg, updates)

    def get_config(self) -> dict:
        return asdict(self.cfg)
