"""配置加载模块 - 从环境变量和 .env 文件加载配置。

每条链的参数放在嵌套的 ChainSettings 中，环境变量使用 ``__`` 分隔，
例如 ``ETHEREUM__RPC_URL``、``SOLANA__TRADING_ENABLED``。
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, NonNegativeFloat, PositiveFloat, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from multichain_sniper.types import ChainId


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 模拟交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class ChainSettings(BaseModel):
    """单条链的检测、风控与仓位参数。"""

    enabled: bool = Field(default=True, description="是否启用该链")

    # ==================== 连接与钱包 ====================
    rpc_url: str = Field(default="", description="RPC 节点地址")
    wallet_address: str = Field(default="", description="钱包地址")
    private_key: str = Field(default="", description="钱包私钥")

    # ==================== 交易开关 ====================
    trading_enabled: bool = Field(
        default=False,
        description="是否真实下单；关闭时记录模拟仓位",
    )
    sniping_enabled: bool = Field(default=True, description="关闭时只检测和评估，不入场")

    # ==================== 检测参数 ====================
    min_liquidity: float = Field(
        default=0.0,
        ge=0.0,
        description="最小流动性（以链基础货币计）",
    )
    min_liquidity_usd: float = Field(
        default=0.0,
        ge=0.0,
        description="最小流动性（美元），0 表示不检查",
    )
    preferred_venues: list[str] = Field(default_factory=list, description="优先交易场所")
    discovery_interval_sec: float = Field(default=60.0, gt=0.0, description="轮询检测间隔（秒）")

    # ==================== 入场参数 ====================
    snipe_amount: float = Field(default=0.1, gt=0.0, description="单次入场金额（基础货币）")
    snipe_slippage_pct: float = Field(
        default=10.0,
        gt=0.0,
        le=50.0,
        description="新上线资产入场滑点（百分比）",
    )

    # ==================== 出场参数 ====================
    exit_slippage_pct: float = Field(default=5.0, gt=0.0, le=50.0, description="出场滑点（百分比）")
    take_profit_pct: float = Field(default=10.0, ge=0.0, description="止盈（百分比）")
    stop_loss_pct: float = Field(default=5.0, ge=0.0, lt=100.0, description="止损（百分比）")
    exit_fraction: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="出场卖出比例，剩余部分预留手续费波动",
    )
    dust_threshold: float = Field(default=0.001, ge=0.0, description="视为零余额的阈值")
    position_poll_interval_sec: float = Field(default=30.0, gt=0.0, description="仓位轮询间隔（秒）")

    # ==================== 风控限额 ====================
    max_transaction_amount: float = Field(default=1.0, gt=0.0, description="单笔最大金额")
    daily_limit: float = Field(default=5.0, gt=0.0, description="每日累计限额")

    # ==================== 价差套利（比特币交易所） ====================
    arbitrage_enabled: bool = Field(default=False, description="是否执行价差套利")
    arbitrage_amount: float = Field(default=0.01, gt=0.0, description="套利下单数量")
    min_spread_pct: float = Field(default=0.5, ge=0.0, description="价差检测阈值（百分比）")
    min_arbitrage_profit_pct: float = Field(default=0.5, ge=0.0, description="最低套利收益（百分比）")

    # ==================== 链特定地址 ====================
    factory_address: str = Field(default="", description="AMM 工厂合约地址")
    router_address: str = Field(default="", description="AMM 路由合约地址")
    reference_asset: str = Field(default="", description="基础货币地址（如 WETH / SOL mint）")
    usd_quote_asset: str = Field(default="", description="用于美元估值的稳定币地址")
    max_gas_price_gwei: float = Field(default=100.0, gt=0.0, description="最大 gas 价格（gwei）")

    # ==================== 交易所 API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")
    kraken_api_key: str = Field(default="", description="Kraken API Key")
    kraken_api_secret: str = Field(default="", description="Kraken API Secret")

    @field_validator("preferred_venues", mode="before")
    @classmethod
    def parse_venues(cls, v: str | list[str]) -> list[str]:
        """支持逗号分隔的字符串。"""
        if isinstance(v, str):
            return [item.strip().lower() for item in v.split(",") if item.strip()]
        return [item.lower() for item in v]


class EthereumSettings(ChainSettings):
    """以太坊（Uniswap V2）默认参数。"""

    rpc_url: str = "https://eth.llamarpc.com"
    min_liquidity: NonNegativeFloat = 10.0
    min_liquidity_usd: NonNegativeFloat = 50_000.0
    preferred_venues: list[str] = Field(default_factory=lambda: ["uniswap"])
    discovery_interval_sec: PositiveFloat = 12.0  # 约一个出块间隔
    factory_address: str = "0x5C69bEe701ef814a2B6a3EDD4B1652CB9cc5aA6f"
    router_address: str = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"
    reference_asset: str = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
    usd_quote_asset: str = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


class BitcoinSettings(ChainSettings):
    """比特币交易所价差检测默认参数。"""

    preferred_venues: list[str] = Field(default_factory=lambda: ["binance", "kraken"])
    discovery_interval_sec: PositiveFloat = 30.0
    snipe_amount: PositiveFloat = 0.01
    max_transaction_amount: PositiveFloat = 0.1
    daily_limit: PositiveFloat = 0.5
    arbitrage_amount: PositiveFloat = 0.001
    reference_asset: str = "BTC"


class SolanaSettings(ChainSettings):
    """Solana（SPL 新币）默认参数。"""

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    min_liquidity: NonNegativeFloat = 50.0
    preferred_venues: list[str] = Field(default_factory=lambda: ["raydium", "orca", "pumpswap"])
    snipe_amount: PositiveFloat = 1.0
    snipe_slippage_pct: float = Field(default=5.0, gt=0.0, le=50.0)
    max_transaction_amount: PositiveFloat = 20.0
    daily_limit: PositiveFloat = 100.0
    reference_asset: str = "So11111111111111111111111111111111111111112"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== 链配置 ====================
    ethereum: EthereumSettings = Field(default_factory=EthereumSettings)
    bitcoin: BitcoinSettings = Field(default_factory=BitcoinSettings)
    solana: SolanaSettings = Field(default_factory=SolanaSettings)

    # ==================== 运行时参数 ====================
    adapter_timeout_sec: float = Field(
        default=15.0,
        gt=0.0,
        description="链适配器查询超时（秒）",
    )
    trade_timeout_sec: float = Field(
        default=180.0,
        gt=0.0,
        description="交易提交与确认超时（秒）",
    )
    event_queue_size: int = Field(default=100, ge=1, description="每条链事件队列容量")
    max_one_position_per_asset: bool = Field(
        default=False,
        description="同一资产是否只允许一个活跃仓位",
    )

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    def chain(self, chain: ChainId | str) -> ChainSettings:
        """按链标识获取链配置。"""
        return getattr(self, ChainId(chain).value)

    def enabled_chains(self) -> list[ChainId]:
        """返回已启用的链。"""
        return [chain for chain in ChainId if self.chain(chain).enabled]

    @property
    def is_paper_mode(self) -> bool:
        """是否为模拟交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        for chain in self.enabled_chains():
            cfg = self.chain(chain)
            if not cfg.trading_enabled:
                continue
            prefix = chain.value.upper()
            if chain is ChainId.BITCOIN:
                if not cfg.binance_api_key:
                    missing.append(f"{prefix}__BINANCE_API_KEY")
                if not cfg.binance_api_secret:
                    missing.append(f"{prefix}__BINANCE_API_SECRET")
                continue
            if not cfg.rpc_url:
                missing.append(f"{prefix}__RPC_URL")
            if not cfg.private_key:
                missing.append(f"{prefix}__PRIVATE_KEY")
            if not cfg.wallet_address:
                missing.append(f"{prefix}__WALLET_ADDRESS")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
