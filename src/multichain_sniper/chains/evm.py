"""Ethereum-style AMM adapter (Uniswap V2 factory and router) built on web3."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from decimal import Decimal
from typing import Any, TypeVar

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode
from multichain_sniper.config import ChainSettings
from multichain_sniper.errors import (
    AdapterCallError,
    AssetNotFoundError,
    ExecutionError,
    GasPriceExceededError,
    InsufficientAllowanceError,
    NetworkError,
    SlippageExceededError,
)
from multichain_sniper.types import AssetDescriptor, ChainId, LiquiditySnapshot, PairEvent, TradeReceipt
from multichain_sniper.utils.logging import get_logger

T = TypeVar("T")


def _abi_fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[str],
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


ERC20_ABI = [
    _abi_fn("name", [], ["string"]),
    _abi_fn("symbol", [], ["string"]),
    _abi_fn("decimals", [], ["uint8"]),
    _abi_fn("totalSupply", [], ["uint256"]),
    _abi_fn("balanceOf", [("owner", "address")], ["uint256"]),
    _abi_fn("allowance", [("owner", "address"), ("spender", "address")], ["uint256"]),
    _abi_fn("approve", [("spender", "address"), ("value", "uint256")], ["bool"], "nonpayable"),
]

ROUTER_ABI = [
    _abi_fn("getAmountsOut", [("amountIn", "uint256"), ("path", "address[]")], ["uint256[]"]),
    _abi_fn(
        "swapExactETHForTokens",
        [("amountOutMin", "uint256"), ("path", "address[]"), ("to", "address"), ("deadline", "uint256")],
        ["uint256[]"],
        "payable",
    ),
    _abi_fn(
        "swapExactTokensForETH",
        [
            ("amountIn", "uint256"),
            ("amountOutMin", "uint256"),
            ("path", "address[]"),
            ("to", "address"),
            ("deadline", "uint256"),
        ],
        ["uint256[]"],
        "nonpayable",
    ),
    _abi_fn(
        "swapExactTokensForTokens",
        [
            ("amountIn", "uint256"),
            ("amountOutMin", "uint256"),
            ("path", "address[]"),
            ("to", "address"),
            ("deadline", "uint256"),
        ],
        ["uint256[]"],
        "nonpayable",
    ),
]

FACTORY_ABI = [
    _abi_fn("getPair", [("tokenA", "address"), ("tokenB", "address")], ["address"]),
    {
        "type": "event",
        "name": "PairCreated",
        "anonymous": False,
        "inputs": [
            {"name": "token0", "type": "address", "indexed": True},
            {"name": "token1", "type": "address", "indexed": True},
            {"name": "pair", "type": "address", "indexed": False},
            {"name": "", "type": "uint256", "indexed": False},
        ],
    },
]

PAIR_ABI = [
    _abi_fn("token0", [], ["address"]),
    _abi_fn("token1", [], ["address"]),
    _abi_fn("getReserves", [], ["uint112", "uint112", "uint32"]),
]

_SWAP_GAS_LIMIT = 300_000
_APPROVE_GAS_LIMIT = 100_000
_DEADLINE_SEC = 1200
_MAX_BLOCK_RANGE = 50


def to_base_units(amount: float, decimals: int) -> int:
    """Convert a human amount to integer token units."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(raw: int, decimals: int) -> float:
    return float(Decimal(raw) / (Decimal(10) ** decimals))


class EvmAdapter(ChainAdapter):
    """Uniswap V2 style adapter: pair discovery, ERC-20 metadata, router swaps."""

    chain = ChainId.ETHEREUM
    discovery_mode = DiscoveryMode.STREAM

    def __init__(
        self,
        settings: ChainSettings,
        *,
        request_timeout: float = 15.0,
        confirm_timeout: float = 180.0,
    ) -> None:
        super().__init__(reference_asset=settings.reference_asset)
        self._settings = settings
        self._request_timeout = request_timeout
        self._confirm_timeout = confirm_timeout
        self._logger = get_logger("multichain_sniper.chains.evm")
        self._w3: Web3 | None = None
        self._account: Any = None
        self._router: Any = None
        self._factory: Any = None
        self._decimals: dict[str, int] = {}
        # Last block whose PairCreated logs were fetched; survives stream reopens.
        self._scanned_block: int | None = None

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> bool:
        if not self._settings.rpc_url:
            self._logger.error("evm_rpc_not_configured")
            return False
        try:
            await asyncio.to_thread(self._connect)
        except Exception as exc:  # noqa: BLE001 - reported as an unavailable chain.
            self._logger.error("evm_initialize_failed", rpc_url=self._settings.rpc_url, error=str(exc))
            return False
        self.initialized = True
        self._logger.info(
            "evm_initialized",
            router=self._settings.router_address,
            factory=self._settings.factory_address,
            read_only=self._account is None,
        )
        return True

    def _connect(self) -> None:
        w3 = Web3(Web3.HTTPProvider(self._settings.rpc_url, request_kwargs={"timeout": self._request_timeout}))
        if not w3.is_connected():
            raise NetworkError(f"cannot_connect: {self._settings.rpc_url}")
        if self._settings.private_key:
            self._account = w3.eth.account.from_key(self._settings.private_key)
            balance = w3.eth.get_balance(self._account.address)
            if balance == 0:
                self._logger.warning("evm_wallet_zero_balance", address=self._account.address)
        else:
            self._logger.warning("evm_read_only", reason="no private key configured")
        self._router = w3.eth.contract(address=Web3.to_checksum_address(self._settings.router_address), abi=ROUTER_ABI)
        self._factory = w3.eth.contract(
            address=Web3.to_checksum_address(self._settings.factory_address), abi=FACTORY_ABI
        )
        self._w3 = w3

    async def close(self) -> None:
        self._w3 = None
        self.initialized = False

    # ------------------------------------------------------------------ helpers

    @property
    def _web3(self) -> Web3:
        if self._w3 is None:
            raise AdapterCallError("evm adapter not initialized")
        return self._w3

    async def _rpc(self, func: Callable[[], T], operation: str) -> T:
        """Run a blocking web3 call in a worker thread and normalize transport errors."""
        try:
            return await asyncio.to_thread(func)
        except (AdapterCallError, ExecutionError):
            raise
        except ContractLogicError as exc:
            raise AdapterCallError(f"{operation}: {exc}") from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise NetworkError(f"{operation}: {exc}") from exc

    def _token(self, address: str) -> Any:
        return self._web3.eth.contract(address=Web3.to_checksum_address(address), abi=ERC20_ABI)

    def _is_reference(self, address: str) -> bool:
        return address.lower() == self.reference_asset.lower()

    async def _get_decimals(self, address: str) -> int:
        key = address.lower()
        if key not in self._decimals:
            self._decimals[key] = int(
                await self._rpc(lambda: self._token(address).functions.decimals().call(), "decimals")
            )
        return self._decimals[key]

    # ------------------------------------------------------------------ discovery

    async def stream_new_pairs(self) -> AsyncIterator[PairEvent]:
        """Poll factory PairCreated logs block range by block range.

        The scan cursor lives on the adapter and only advances after a range
        was fetched, so a stream reopened after a transport error resumes
        where the failed one stopped.
        """
        if self._scanned_block is None:
            self._scanned_block = await self._rpc(lambda: self._web3.eth.block_number, "block_number")
            self._logger.info("evm_pair_stream_opened", from_block=self._scanned_block)
        else:
            self._logger.info("evm_pair_stream_resumed", from_block=self._scanned_block + 1)
        while True:
            await asyncio.sleep(self._settings.discovery_interval_sec)
            current = await self._rpc(lambda: self._web3.eth.block_number, "block_number")
            while self._scanned_block < current:
                from_block = self._scanned_block + 1
                to_block = min(current, from_block + _MAX_BLOCK_RANGE - 1)
                logs = await self._rpc(
                    lambda: self._factory.events.PairCreated.get_logs(from_block=from_block, to_block=to_block),
                    "pair_created_logs",
                )
                self._scanned_block = to_block
                for log in logs:
                    yield await self._build_pair_event(log)

    async def _build_pair_event(self, log: Any) -> PairEvent:
        """Build the event for one PairCreated log.

        Metadata or reserve lookups that fail leave empty fields; the pair is
        still emitted so discovery logging sees it, and the safety filter
        refetches metadata before any trade.
        """
        args = log["args"]
        token0, token1, pair_address = args["token0"], args["token1"], args["pair"]
        asset0, asset1 = await asyncio.gather(
            self._asset_or_placeholder(token0),
            self._asset_or_placeholder(token1),
        )
        try:
            liquidity = await self._pair_liquidity(pair_address, asset0, asset1)
        except AdapterCallError as exc:
            self._logger.warning("evm_pair_reserves_failed", pair=pair_address, error=str(exc))
            liquidity = LiquiditySnapshot(reserve0=0.0, reserve1=0.0, reference_reserve=0.0)
        tx_hash = log.get("transactionHash")
        return PairEvent(
            chain=self.chain,
            pair_address=pair_address,
            asset0=asset0,
            asset1=asset1,
            has_reference_asset=self._is_reference(token0) or self._is_reference(token1),
            liquidity=liquidity,
            venue="uniswap",
            block_number=log.get("blockNumber"),
            tx_hash=tx_hash.hex() if hasattr(tx_hash, "hex") else tx_hash,
        )

    async def _asset_or_placeholder(self, address: str) -> AssetDescriptor:
        try:
            return await self.get_asset_info(address)
        except AdapterCallError as exc:
            self._logger.warning("evm_pair_metadata_failed", asset=address, error=str(exc))
            decimals = self._decimals.get(address.lower(), 18)
            return AssetDescriptor(chain=self.chain, address=address, decimals=decimals)

    async def _pair_liquidity(
        self,
        pair_address: str,
        asset0: AssetDescriptor,
        asset1: AssetDescriptor,
    ) -> LiquiditySnapshot:
        pair = self._web3.eth.contract(address=Web3.to_checksum_address(pair_address), abi=PAIR_ABI)
        raw0, raw1, _ = await self._rpc(lambda: pair.functions.getReserves().call(), "get_reserves")
        reserve0 = from_base_units(raw0, asset0.decimals)
        reserve1 = from_base_units(raw1, asset1.decimals)
        if self._is_reference(asset0.address):
            reference_reserve = reserve0
        elif self._is_reference(asset1.address):
            reference_reserve = reserve1
        else:
            reference_reserve = 0.0
        liquidity_usd = 0.0
        if reference_reserve > 0:
            liquidity_usd = reference_reserve * await self._reference_usd_price() * 2
        return LiquiditySnapshot(
            reserve0=reserve0,
            reserve1=reserve1,
            reference_reserve=reference_reserve,
            liquidity_usd=liquidity_usd,
        )

    async def _reference_usd_price(self) -> float:
        """WETH price in the USD stablecoin; 0.0 when unavailable."""
        usd = self._settings.usd_quote_asset
        if not usd:
            return 0.0
        try:
            usd_decimals = await self._get_decimals(usd)
            path = [Web3.to_checksum_address(self.reference_asset), Web3.to_checksum_address(usd)]
            amounts = await self._rpc(
                lambda: self._router.functions.getAmountsOut(10**18, path).call(),
                "reference_usd_price",
            )
        except AdapterCallError as exc:
            self._logger.warning("evm_usd_price_failed", error=str(exc))
            return 0.0
        return from_base_units(amounts[-1], usd_decimals)

    # ------------------------------------------------------------------ queries

    async def get_asset_info(self, address: str) -> AssetDescriptor:
        checksum = Web3.to_checksum_address(address)
        code = await self._rpc(lambda: self._web3.eth.get_code(checksum), "get_code")
        if not code:
            raise AssetNotFoundError(f"no contract at {address}")
        token = self._token(checksum)

        def read_metadata() -> tuple[str, str, int, int]:
            try:
                name = token.functions.name().call()
                symbol = token.functions.symbol().call()
            except (ContractLogicError, OverflowError, UnicodeDecodeError):
                name, symbol = "", ""
            return name, symbol, token.functions.decimals().call(), token.functions.totalSupply().call()

        name, symbol, decimals, supply = await self._rpc(read_metadata, "asset_info")
        self._decimals[address.lower()] = int(decimals)
        return AssetDescriptor(
            chain=self.chain,
            address=checksum,
            name=name,
            symbol=symbol,
            decimals=int(decimals),
            total_supply=from_base_units(supply, int(decimals)),
        )

    async def get_asset_price(self, address: str) -> float:
        if self._is_reference(address):
            return 1.0
        try:
            decimals = await self._get_decimals(address)
            path = [Web3.to_checksum_address(address), Web3.to_checksum_address(self.reference_asset)]
            amounts = await self._rpc(
                lambda: self._router.functions.getAmountsOut(10**decimals, path).call(),
                "get_amounts_out",
            )
        except AdapterCallError as exc:
            self._logger.warning("evm_price_failed", asset=address, error=str(exc))
            return 0.0
        return from_base_units(amounts[-1], 18)

    async def get_balance(self, address: str) -> float:
        if self._account is None:
            raise AdapterCallError("no wallet configured")
        owner = self._account.address
        if self._is_reference(address):
            wei = await self._rpc(lambda: self._web3.eth.get_balance(owner), "native_balance")
            return from_base_units(wei, 18)
        decimals = await self._get_decimals(address)
        raw = await self._rpc(lambda: self._token(address).functions.balanceOf(owner).call(), "balance_of")
        return from_base_units(raw, decimals)

    # ------------------------------------------------------------------ trading

    async def swap(
        self,
        asset_in: str,
        asset_out: str,
        amount: float,
        slippage_pct: float,
    ) -> TradeReceipt:
        if self._account is None:
            raise ExecutionError("no wallet configured for trading")
        if amount <= 0:
            raise ExecutionError("swap amount must be positive")

        decimals_in = 18 if self._is_reference(asset_in) else await self._get_decimals(asset_in)
        amount_in = to_base_units(amount, decimals_in)
        path = [Web3.to_checksum_address(asset_in), Web3.to_checksum_address(asset_out)]

        gas_price = await self._checked_gas_price()
        if not self._is_reference(asset_in):
            await self._ensure_allowance(asset_in, amount_in, gas_price)

        amounts = await self._rpc(
            lambda: self._router.functions.getAmountsOut(amount_in, path).call(),
            "get_amounts_out",
        )
        min_out = amounts[-1] * int((100 - slippage_pct) * 100) // 10_000
        before = await self.get_balance(asset_out)

        owner = self._account.address
        deadline = int(time.time()) + _DEADLINE_SEC
        if self._is_reference(asset_in):
            call = self._router.functions.swapExactETHForTokens(min_out, path, owner, deadline)
            value = amount_in
        elif self._is_reference(asset_out):
            call = self._router.functions.swapExactTokensForETH(amount_in, min_out, path, owner, deadline)
            value = 0
        else:
            call = self._router.functions.swapExactTokensForTokens(amount_in, min_out, path, owner, deadline)
            value = 0

        self._logger.info(
            "evm_swap_submitting",
            asset_in=asset_in,
            asset_out=asset_out,
            amount=amount,
            slippage_pct=slippage_pct,
            gas_price_gwei=float(Web3.from_wei(gas_price, "gwei")),
        )
        tx_hash = await self._send(call, gas_limit=_SWAP_GAS_LIMIT, gas_price=gas_price, value=value)
        after = await self.get_balance(asset_out)
        amount_out = max(0.0, after - before)

        fill_price = None
        if amount_out > 0:
            if self._is_reference(asset_in):
                fill_price = amount / amount_out
            elif self._is_reference(asset_out):
                fill_price = amount_out / amount
        return TradeReceipt(
            tx_hash=tx_hash,
            amount_in=amount,
            amount_out=amount_out,
            fill_price=fill_price,
            venue="uniswap",
        )

    async def _checked_gas_price(self) -> int:
        gas_price = await self._rpc(lambda: self._web3.eth.gas_price, "gas_price")
        cap = Web3.to_wei(Decimal(str(self._settings.max_gas_price_gwei)), "gwei")
        if gas_price > cap:
            raise GasPriceExceededError(
                f"gas price {Web3.from_wei(gas_price, 'gwei')} gwei exceeds cap "
                f"{self._settings.max_gas_price_gwei} gwei"
            )
        return gas_price

    async def _ensure_allowance(self, token_address: str, amount: int, gas_price: int) -> None:
        token = self._token(token_address)
        owner = self._account.address
        spender = Web3.to_checksum_address(self._settings.router_address)
        allowance = await self._rpc(lambda: token.functions.allowance(owner, spender).call(), "allowance")
        if allowance >= amount:
            return
        self._logger.info("evm_approving", token=token_address, amount=amount, current_allowance=allowance)
        try:
            await self._send(
                token.functions.approve(spender, amount),
                gas_limit=_APPROVE_GAS_LIMIT,
                gas_price=gas_price,
            )
        except ExecutionError as exc:
            raise InsufficientAllowanceError(f"approve failed for {token_address}: {exc}") from exc

    async def _send(self, call: Any, *, gas_limit: int, gas_price: int, value: int = 0) -> str:
        """Sign, broadcast and confirm a contract call. Returns the tx hash."""
        account = self._account
        w3 = self._web3

        def submit() -> str:
            tx = call.build_transaction(
                {
                    "from": account.address,
                    "value": value,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                    "chainId": w3.eth.chain_id,
                }
            )
            signed = account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._confirm_timeout)
            if receipt["status"] != 1:
                raise ExecutionError(f"transaction reverted: {tx_hash.hex()}")
            return tx_hash.hex()

        try:
            return await asyncio.to_thread(submit)
        except ExecutionError:
            raise
        except ContractLogicError as exc:
            message = str(exc)
            if "INSUFFICIENT_OUTPUT_AMOUNT" in message:
                raise SlippageExceededError(message) from exc
            if "TRANSFER_FROM_FAILED" in message:
                raise InsufficientAllowanceError(message) from exc
            raise ExecutionError(message) from exc
        except TimeExhausted as exc:
            raise ExecutionError(f"confirmation timeout: {exc}") from exc
        except (Web3Exception, OSError, ValueError) as exc:
            raise ExecutionError(str(exc)) from exc
