"""Solana adapter: DexScreener listings, JSON-RPC queries, Jupiter routing."""

from __future__ import annotations

import asyncio
import base64
import time
from typing import Any

import httpx
from cachetools import LRUCache
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode
from multichain_sniper.config import ChainSettings
from multichain_sniper.errors import (
    AdapterCallError,
    AssetNotFoundError,
    ExecutionError,
    NetworkError,
    SlippageExceededError,
)
from multichain_sniper.types import AssetDescriptor, ChainId, LiquiditySnapshot, PairEvent, TradeReceipt
from multichain_sniper.utils.logging import get_logger

_DEXSCREENER_PROFILES_URL = "https://api.dexscreener.com/token-profiles/latest/v1"
_DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"
_JUPITER_QUOTE_URL = "https://lite-api.jup.ag/swap/v1/quote"
_JUPITER_SWAP_URL = "https://lite-api.jup.ag/swap/v1/swap"

_SOL_DECIMALS = 9
_MAX_PROFILES_PER_POLL = 25
_CONFIRM_POLL_SEC = 1.0
_CACHE_SIZE = 2048


class SolanaAdapter(ChainAdapter):
    """New SPL token listings and Jupiter swaps."""

    chain = ChainId.SOLANA
    discovery_mode = DiscoveryMode.POLL

    def __init__(
        self,
        settings: ChainSettings,
        *,
        request_timeout: float = 15.0,
        confirm_timeout: float = 180.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(reference_asset=settings.reference_asset)
        self._settings = settings
        self._request_timeout = request_timeout
        self._confirm_timeout = confirm_timeout
        self._client = client
        self._keypair: Keypair | None = None
        self._seen: LRUCache[str, bool] = LRUCache(maxsize=_CACHE_SIZE)
        self._metadata: LRUCache[str, AssetDescriptor] = LRUCache(maxsize=_CACHE_SIZE)
        self._decimals: LRUCache[str, int] = LRUCache(maxsize=_CACHE_SIZE)
        self._decimals[settings.reference_asset] = _SOL_DECIMALS
        self._logger = get_logger("multichain_sniper.chains.solana")

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._request_timeout)
        try:
            version = await self._rpc_read("getVersion", [])
        except AdapterCallError as exc:
            self._logger.error("solana_initialize_failed", rpc_url=self._settings.rpc_url, error=str(exc))
            return False
        if self._settings.private_key:
            try:
                self._keypair = Keypair.from_base58_string(self._settings.private_key)
            except ValueError as exc:
                self._logger.error("solana_invalid_private_key", error=str(exc))
                return False
        else:
            self._logger.warning("solana_read_only", reason="no private key configured")
        self.initialized = True
        self._logger.info(
            "solana_initialized",
            solana_core=version.get("solana-core") if isinstance(version, dict) else None,
            wallet=self._owner if self._keypair else None,
        )
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.initialized = False

    # ------------------------------------------------------------------ transport

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise AdapterCallError("solana adapter not initialized")
        return self._client

    @property
    def _owner(self) -> str:
        if self._keypair is None:
            raise AdapterCallError("no wallet configured")
        return str(self._keypair.pubkey())

    @retry(
        retry=retry_if_exception_type(NetworkError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._http.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (429,) or exc.response.status_code >= 500:
                raise NetworkError(f"{url}: {exc}") from exc
            raise AdapterCallError(f"{url}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{url}: {exc}") from exc
        return response.json()

    async def _post_rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self._http.post(self._settings.rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method}: {exc}") from exc
        body = response.json()
        if "error" in body:
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise AdapterCallError(f"{method}: {message}")
        return body.get("result")

    @retry(
        retry=retry_if_exception_type(NetworkError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _rpc_read(self, method: str, params: list[Any]) -> Any:
        return await self._post_rpc(method, params)

    # ------------------------------------------------------------------ discovery

    async def poll_new_assets(self) -> list[PairEvent]:
        """Return pools of token profiles not seen by earlier polls."""
        profiles = await self._get_json(_DEXSCREENER_PROFILES_URL)
        if not isinstance(profiles, list):
            return []
        events: list[PairEvent] = []
        for item in profiles[:_MAX_PROFILES_PER_POLL]:
            mint = item.get("tokenAddress", "")
            if item.get("chainId") != "solana" or not mint or mint in self._seen:
                continue
            self._seen[mint] = True
            try:
                event = await self._pair_event_for(mint)
            except AdapterCallError as exc:
                self._logger.warning("solana_pair_lookup_failed", mint=mint, error=str(exc))
                continue
            if event is not None:
                events.append(event)
        return events

    async def _pair_event_for(self, mint: str) -> PairEvent | None:
        data = await self._get_json(f"{_DEXSCREENER_TOKENS_URL}/{mint}")
        pairs = [p for p in (data.get("pairs") or []) if p.get("chainId") == "solana"]
        venues = self._settings.preferred_venues
        if venues:
            pairs = [p for p in pairs if str(p.get("dexId", "")).lower() in venues]
        if not pairs:
            return None
        pair = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))

        base, quote = pair.get("baseToken") or {}, pair.get("quoteToken") or {}
        asset0 = self._remember(base)
        asset1 = self._remember(quote)
        liquidity = pair.get("liquidity") or {}
        reserve0 = float(liquidity.get("base") or 0)
        reserve1 = float(liquidity.get("quote") or 0)
        if asset1.address == self.reference_asset:
            reference_reserve = reserve1
        elif asset0.address == self.reference_asset:
            reference_reserve = reserve0
        else:
            reference_reserve = 0.0
        return PairEvent(
            chain=self.chain,
            pair_address=pair.get("pairAddress", ""),
            asset0=asset0,
            asset1=asset1,
            has_reference_asset=self.reference_asset in (asset0.address, asset1.address),
            liquidity=LiquiditySnapshot(
                reserve0=reserve0,
                reserve1=reserve1,
                reference_reserve=reference_reserve,
                liquidity_usd=float(liquidity.get("usd") or 0),
            ),
            venue=str(pair.get("dexId", "")),
        )

    def _remember(self, token: dict[str, Any]) -> AssetDescriptor:
        address = token.get("address", "")
        descriptor = AssetDescriptor(
            chain=self.chain,
            address=address,
            name=token.get("name", "") or "",
            symbol=token.get("symbol", "") or "",
            decimals=self._decimals.get(address, _SOL_DECIMALS),
        )
        self._metadata.setdefault(address, descriptor)
        return descriptor

    # ------------------------------------------------------------------ queries

    async def _get_decimals(self, mint: str) -> int:
        if mint not in self._decimals:
            await self.get_asset_info(mint)
        return self._decimals[mint]

    async def get_asset_info(self, address: str) -> AssetDescriptor:
        try:
            result = await self._rpc_read("getTokenSupply", [address])
        except NetworkError:
            raise
        except AdapterCallError as exc:
            raise AssetNotFoundError(f"{address}: {exc}") from exc
        value = (result or {}).get("value") or {}
        decimals = int(value.get("decimals", 0))
        self._decimals[address] = decimals
        supply = float(value.get("uiAmountString") or 0)
        cached = self._metadata.get(address)
        return AssetDescriptor(
            chain=self.chain,
            address=address,
            name=cached.name if cached else "",
            symbol=cached.symbol if cached else "",
            decimals=decimals,
            total_supply=supply,
        )

    async def get_asset_price(self, address: str) -> float:
        if address == self.reference_asset:
            return 1.0
        try:
            decimals = await self._get_decimals(address)
            quote = await self._quote(address, self.reference_asset, 10**decimals, slippage_bps=50)
        except AdapterCallError as exc:
            self._logger.warning("solana_price_failed", mint=address, error=str(exc))
            return 0.0
        return int(quote.get("outAmount", 0)) / 10**_SOL_DECIMALS

    async def get_balance(self, address: str) -> float:
        owner = self._owner
        if address == self.reference_asset:
            result = await self._rpc_read("getBalance", [owner])
            return int((result or {}).get("value", 0)) / 10**_SOL_DECIMALS
        result = await self._rpc_read(
            "getTokenAccountsByOwner",
            [owner, {"mint": address}, {"encoding": "jsonParsed"}],
        )
        total = 0.0
        for account in (result or {}).get("value", []):
            amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
            total += float(amount.get("uiAmountString") or 0)
        return total

    async def _quote(self, input_mint: str, output_mint: str, amount: int, *, slippage_bps: int) -> dict[str, Any]:
        quote = await self._get_json(
            _JUPITER_QUOTE_URL,
            {
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": str(slippage_bps),
            },
        )
        if not isinstance(quote, dict) or "error" in quote or not quote.get("outAmount"):
            raise AdapterCallError(f"no route {input_mint} -> {output_mint}")
        return quote

    # ------------------------------------------------------------------ trading

    async def swap(
        self,
        asset_in: str,
        asset_out: str,
        amount: float,
        slippage_pct: float,
    ) -> TradeReceipt:
        if self._keypair is None:
            raise ExecutionError("no wallet configured for trading")
        if amount <= 0:
            raise ExecutionError("swap amount must be positive")
        try:
            decimals_in = await self._get_decimals(asset_in)
            quote = await self._quote(
                asset_in,
                asset_out,
                int(amount * 10**decimals_in),
                slippage_bps=int(slippage_pct * 100),
            )
            before = await self.get_balance(asset_out)
            swap_data = await self._get_swap_transaction(quote)
        except AdapterCallError as exc:
            raise ExecutionError(f"swap preparation failed: {exc}") from exc

        raw = base64.b64decode(swap_data["swapTransaction"])
        unsigned = VersionedTransaction.from_bytes(raw)
        signed = VersionedTransaction(unsigned.message, [self._keypair])
        encoded = base64.b64encode(bytes(signed)).decode("ascii")

        self._logger.info(
            "solana_swap_submitting",
            asset_in=asset_in,
            asset_out=asset_out,
            amount=amount,
            slippage_pct=slippage_pct,
        )
        try:
            signature = await self._post_rpc(
                "sendTransaction",
                [encoded, {"encoding": "base64", "skipPreflight": False, "maxRetries": 3}],
            )
        except AdapterCallError as exc:
            if "slippage" in str(exc).lower() or "0x1771" in str(exc):
                raise SlippageExceededError(str(exc)) from exc
            raise ExecutionError(f"sendTransaction failed: {exc}") from exc
        await self._confirm(signature)

        try:
            after = await self.get_balance(asset_out)
        except AdapterCallError:
            after = before
        amount_out = after - before
        if amount_out <= 0:
            decimals_out = await self._get_decimals(asset_out)
            amount_out = int(quote["outAmount"]) / 10**decimals_out

        fill_price = None
        if amount_out > 0:
            if asset_in == self.reference_asset:
                fill_price = amount / amount_out
            elif asset_out == self.reference_asset:
                fill_price = amount_out / amount
        return TradeReceipt(
            tx_hash=str(signature),
            amount_in=amount,
            amount_out=amount_out,
            fill_price=fill_price,
            venue="jupiter",
        )

    async def _get_swap_transaction(self, quote: dict[str, Any]) -> dict[str, Any]:
        body = {"quoteResponse": quote, "userPublicKey": self._owner, "wrapAndUnwrapSol": True}
        try:
            response = await self._http.post(_JUPITER_SWAP_URL, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkError(f"jupiter swap: {exc}") from exc
        data = response.json()
        if not data.get("swapTransaction"):
            raise AdapterCallError("jupiter returned no transaction")
        return data

    async def _confirm(self, signature: str) -> None:
        deadline = time.monotonic() + self._confirm_timeout
        while time.monotonic() < deadline:
            try:
                result = await self._rpc_read(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}],
                )
            except AdapterCallError as exc:
                self._logger.debug("solana_status_poll_failed", signature=signature, error=str(exc))
            else:
                statuses = (result or {}).get("value") or []
                status = statuses[0] if statuses else None
                if status and status.get("confirmationStatus") in ("confirmed", "finalized"):
                    if status.get("err") is not None:
                        raise ExecutionError(f"transaction failed: {status['err']}")
                    return
            await asyncio.sleep(_CONFIRM_POLL_SEC)
        raise ExecutionError(f"confirmation timeout for {signature}")
