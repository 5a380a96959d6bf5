"""CLI 入口模块 - Multichain Sniper 命令行接口。"""

import asyncio
import sys
from datetime import datetime

import click

from multichain_sniper import __version__
from multichain_sniper.config import get_settings
from multichain_sniper.engine import SniperEngine
from multichain_sniper.errors import AdapterUnavailableError
from multichain_sniper.types import ChainId
from multichain_sniper.utils.logging import get_logger, setup_logging

CHAIN_CHOICES = click.Choice([chain.value for chain in ChainId], case_sensitive=False)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Multichain Sniper - 多链新流动性检测与自动狙击系统。

    检测以太坊、Solana 新交易对与比特币交易所价差，经安全过滤后自动入场并管理止盈止损。
    """
    if version:
        click.echo(f"multichain-sniper version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--chain",
    "-c",
    "chains",
    type=CHAIN_CHOICES,
    multiple=True,
    help="只启动指定链（可重复）；默认启动所有已启用的链",
)
def run(chains: tuple[str, ...]) -> None:
    """启动检测与仓位管理，直到 Ctrl+C。

    发现新交易对 → 安全过滤 → 风控检查 → 入场 → 止盈/止损监控
    """
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("multichain_sniper.main")

    selected = [ChainId(c.lower()) for c in chains] or settings.enabled_chains()
    logger.info(
        "starting_engine",
        mode=settings.mode.value,
        chains=[c.value for c in selected],
        timestamp=datetime.now().isoformat(),
    )

    # 验证配置
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 RPC、私钥与 API 密钥",
            )
            sys.exit(1)

    if not selected:
        logger.error("no_chain_enabled", hint="至少启用一条链，例如 ETHEREUM__ENABLED=true")
        sys.exit(1)

    engine = SniperEngine(settings, chains=selected)
    try:
        asyncio.run(engine.run(selected))
    except KeyboardInterrupt:
        logger.info("engine_interrupted", message="User interrupted")
        sys.exit(0)
    except AdapterUnavailableError as e:
        logger.error("engine_start_failed", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.exception("engine_failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.argument("address")
@click.option("--chain", "-c", type=CHAIN_CHOICES, required=True, help="资产所在链")
def evaluate(address: str, chain: str) -> None:
    """对单个资产执行一次安全评估并打印结果。"""
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("multichain_sniper.main")
    chain_id = ChainId(chain.lower())

    engine = SniperEngine(settings, chains=[chain_id])
    try:
        verdict = asyncio.run(engine.evaluate(chain_id, address))
    except AdapterUnavailableError as e:
        logger.error("evaluate_failed", chain=chain_id.value, error=str(e))
        sys.exit(1)

    click.echo("=" * 50)
    click.echo(f"Safety Verdict - {chain_id.value}")
    click.echo("=" * 50)
    click.echo(f"   Asset: {verdict.asset.address}")
    click.echo(f"   Name/Symbol: {verdict.asset.name or '-'} / {verdict.asset.symbol or '-'}")
    click.echo(f"   Quoted price: {verdict.quoted_price if verdict.quoted_price is not None else '-'}")
    click.echo(f"   Tradeable: {'Yes' if verdict.tradeable else 'No'}")
    for warning in verdict.warnings:
        click.echo(f"   [WARN] {warning}")
    for reason in verdict.blocking_reasons:
        click.echo(f"   [BLOCK] {reason}")
    click.echo("=" * 50)

    if not verdict.tradeable:
        sys.exit(2)


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    settings = get_settings()
    setup_logging(settings)

    click.echo("=" * 50)
    click.echo("Multichain Sniper - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # 各链配置
    for chain in ChainId:
        cfg = settings.chain(chain)
        state = "[ON]" if cfg.enabled else "[OFF]"
        click.echo(f"{state} {chain.value.capitalize()}")
        if not cfg.enabled:
            click.echo()
            continue
        click.echo(f"   Trading: {'Enabled' if cfg.trading_enabled else 'Simulated'}")
        click.echo(f"   Sniping: {'Enabled' if cfg.sniping_enabled else 'Detect only'}")
        click.echo(f"   Venues: {', '.join(cfg.preferred_venues) or '-'}")
        click.echo(f"   Min liquidity: {cfg.min_liquidity} (USD {cfg.min_liquidity_usd})")
        click.echo(f"   Entry: {cfg.snipe_amount} @ {cfg.snipe_slippage_pct}% slippage")
        click.echo(f"   Take profit / Stop loss: {cfg.take_profit_pct}% / {cfg.stop_loss_pct}%")
        click.echo(f"   Limits: {cfg.max_transaction_amount} per tx, {cfg.daily_limit} per day")
        if chain is ChainId.BITCOIN:
            binance_status = "[OK] Configured" if cfg.binance_api_key else "[--] Not configured"
            kraken_status = "[OK] Configured" if cfg.kraken_api_key else "[--] Not configured"
            click.echo(f"   Binance API: {binance_status}")
            click.echo(f"   Kraken API: {kraken_status}")
            click.echo(f"   Arbitrage: {'Enabled' if cfg.arbitrage_enabled else 'Disabled'}")
        else:
            wallet_status = "[OK] Configured" if cfg.private_key else "[--] Read only"
            click.echo(f"   RPC: {cfg.rpc_url or '-'}")
            click.echo(f"   Wallet: {wallet_status}")
        click.echo()

    # 运行时参数
    click.echo("[Runtime]")
    click.echo(f"   Adapter timeout: {settings.adapter_timeout_sec}s")
    click.echo(f"   Trade timeout: {settings.trade_timeout_sec}s")
    click.echo(f"   One position per asset: {'Yes' if settings.max_one_position_per_asset else 'No'}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require wallet or API configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("multichain_sniper.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment configuration"),
        ("httpx", "HTTP client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("web3", "Ethereum RPC"),
        ("solders", "Solana transaction signing"),
        ("binance", "Binance exchange client"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    from pathlib import Path

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m multichain_sniper.main 调用
if __name__ == "__main__":
    cli()
