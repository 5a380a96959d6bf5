"""Bitcoin venue adapter: exchange price spread between Binance and Kraken."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import time
from typing import Any
from urllib.parse import urlencode

import httpx
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode
from multichain_sniper.config import ChainSettings
from multichain_sniper.errors import AdapterCallError, AssetNotFoundError, ExecutionError, NetworkError
from multichain_sniper.types import AssetDescriptor, ChainId, TradeReceipt, TradeSide
from multichain_sniper.utils.logging import get_logger

_KRAKEN_API_URL = "https://api.kraken.com"
_KRAKEN_PAIR = "XBTUSD"
_BINANCE_SYMBOL = "BTCUSDT"


def kraken_signature(url_path: str, data: dict[str, Any], secret: str) -> str:
    """API-Sign header: HMAC-SHA512 of path + SHA256(nonce + body)."""
    post_data = urlencode(data)
    encoded = (str(data["nonce"]) + post_data).encode()
    message = url_path.encode() + hashlib.sha256(encoded).digest()
    mac = hmac.new(base64.b64decode(secret), message, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


class BitcoinVenueAdapter(ChainAdapter):
    """Reads BTC prices per venue and places market orders."""

    chain = ChainId.BITCOIN
    discovery_mode = DiscoveryMode.SPREAD

    def __init__(
        self,
        settings: ChainSettings,
        *,
        request_timeout: float = 15.0,
        binance_client: Any = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(reference_asset=settings.reference_asset)
        self._settings = settings
        self._request_timeout = request_timeout
        self._binance = binance_client
        self._http = http_client
        self._logger = get_logger("multichain_sniper.chains.bitcoin")

    @property
    def venues(self) -> list[str]:
        return self._settings.preferred_venues or ["binance", "kraken"]

    async def initialize(self) -> bool:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=_KRAKEN_API_URL, timeout=self._request_timeout)
        if "binance" in self.venues and self._binance is None:
            try:
                self._binance = await asyncio.to_thread(
                    Client,
                    api_key=self._settings.binance_api_key or None,
                    api_secret=self._settings.binance_api_secret or None,
                    testnet=self._settings.binance_testnet,
                )
            except (BinanceAPIException, BinanceRequestException, OSError) as exc:
                self._logger.error("binance_initialize_failed", error=str(exc))
                return False
        self.initialized = True
        self._logger.info("bitcoin_venues_initialized", venues=self.venues)
        return True

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self.initialized = False

    # ------------------------------------------------------------------ prices

    async def get_venue_prices(self) -> dict[str, float]:
        """Return BTC/USD per venue; venues that fail are left out."""
        readers = {"binance": self._binance_price, "kraken": self._kraken_price}
        venues = [v for v in self.venues if v in readers]
        results = await asyncio.gather(*(readers[v]() for v in venues), return_exceptions=True)
        prices: dict[str, float] = {}
        for venue, result in zip(venues, results, strict=True):
            if isinstance(result, BaseException):
                self._logger.warning("venue_price_failed", venue=venue, error=str(result))
                continue
            prices[venue] = result
        return prices

    async def _binance_price(self) -> float:
        if self._binance is None:
            raise AdapterCallError("binance client not initialized")
        try:
            ticker = await asyncio.to_thread(self._binance.get_symbol_ticker, symbol=_BINANCE_SYMBOL)
        except (BinanceAPIException, BinanceRequestException, OSError) as exc:
            raise NetworkError(f"binance ticker: {exc}") from exc
        return float(ticker["price"])

    async def _kraken_price(self) -> float:
        if self._http is None:
            raise AdapterCallError("kraken client not initialized")
        try:
            response = await self._http.get("/0/public/Ticker", params={"pair": _KRAKEN_PAIR})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkError(f"kraken ticker: {exc}") from exc
        body = response.json()
        if body.get("error"):
            raise AdapterCallError(f"kraken ticker: {body['error']}")
        ticker = next(iter(body["result"].values()))
        return float(ticker["c"][0])

    # ------------------------------------------------------------------ asset queries

    async def get_asset_info(self, address: str) -> AssetDescriptor:
        if address.upper() != self.reference_asset.upper():
            raise AssetNotFoundError(f"unsupported asset on bitcoin venues: {address}")
        return AssetDescriptor(chain=self.chain, address=self.reference_asset, name="Bitcoin", symbol="BTC", decimals=8)

    async def get_asset_price(self, address: str) -> float:
        return 1.0 if address.upper() == self.reference_asset.upper() else 0.0

    async def get_balance(self, address: str) -> float:
        if self._binance is None:
            raise AdapterCallError("binance client not initialized")
        try:
            balance = await asyncio.to_thread(self._binance.get_asset_balance, asset=address.upper())
        except (BinanceAPIException, BinanceRequestException, OSError) as exc:
            raise NetworkError(f"binance balance: {exc}") from exc
        return float((balance or {}).get("free", 0.0))

    async def swap(
        self,
        asset_in: str,
        asset_out: str,
        amount: float,
        slippage_pct: float,
    ) -> TradeReceipt:
        raise ExecutionError("bitcoin venues trade through execute_exchange_trade")

    # ------------------------------------------------------------------ orders

    async def execute_exchange_trade(self, venue: str, side: TradeSide, amount: float) -> TradeReceipt:
        if amount <= 0:
            raise ExecutionError("order amount must be positive")
        self._logger.info("exchange_order_submitting", venue=venue, side=side, amount=amount)
        if venue == "binance":
            return await self._binance_order(side, amount)
        if venue == "kraken":
            return await self._kraken_order(side, amount)
        raise ExecutionError(f"unknown venue: {venue}")

    async def _binance_order(self, side: TradeSide, amount: float) -> TradeReceipt:
        if self._binance is None:
            raise ExecutionError("binance client not initialized")
        place = self._binance.order_market_buy if side == "buy" else self._binance.order_market_sell
        try:
            order = await asyncio.to_thread(place, symbol=_BINANCE_SYMBOL, quantity=amount)
        except (BinanceAPIException, BinanceRequestException, OSError) as exc:
            raise ExecutionError(f"binance {side} failed: {exc}") from exc
        executed = float(order.get("executedQty") or amount)
        quote_qty = float(order.get("cummulativeQuoteQty") or 0.0)
        return TradeReceipt(
            tx_hash=str(order.get("orderId", "")),
            amount_in=amount,
            amount_out=executed,
            fill_price=quote_qty / executed if executed and quote_qty else None,
            venue="binance",
        )

    async def _kraken_order(self, side: TradeSide, amount: float) -> TradeReceipt:
        if self._http is None:
            raise ExecutionError("kraken client not initialized")
        if not (self._settings.kraken_api_key and self._settings.kraken_api_secret):
            raise ExecutionError("kraken API credentials not configured")
        path = "/0/private/AddOrder"
        data = {
            "nonce": str(int(time.time() * 1000)),
            "ordertype": "market",
            "type": side,
            "volume": f"{amount:.8f}",
            "pair": _KRAKEN_PAIR,
        }
        headers = {
            "API-Key": self._settings.kraken_api_key,
            "API-Sign": kraken_signature(path, data, self._settings.kraken_api_secret),
        }
        try:
            response = await self._http.post(path, data=data, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExecutionError(f"kraken {side} failed: {exc}") from exc
        body = response.json()
        if body.get("error"):
            raise ExecutionError(f"kraken {side} rejected: {body['error']}")
        txids = body.get("result", {}).get("txid") or [""]
        return TradeReceipt(tx_hash=txids[0], amount_in=amount, venue="kraken")
