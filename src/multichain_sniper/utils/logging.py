"""结构化日志配置模块。

使用 structlog 提供结构化日志支持，支持 JSON 和控制台两种输出格式。
检测、安全评估、狙击与仓位事件各有固定的事件名，便于按类别检索。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from multichain_sniper.config import LogFormat, Settings, get_settings
from multichain_sniper.types import (
    CloseResult,
    PairEvent,
    Position,
    SafetyVerdict,
    SnipeFailure,
)


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    根据配置设置日志级别和输出格式。
    """
    settings = settings or get_settings()

    # 设置标准库日志级别
    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # 共享处理器
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    # 根据格式选择渲染器
    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。

    Args:
        name: 日志记录器名称。如果为 None，则使用调用模块名。

    Returns:
        结构化日志记录器实例。
    """
    return structlog.get_logger(name)


# 便捷日志函数
def log_discovery(
    logger: structlog.stdlib.BoundLogger,
    event: PairEvent,
    **kwargs: Any,
) -> None:
    """记录新交易对发现（无论后续结果如何都会记录）。"""
    logger.info(
        "pair_discovered",
        chain=event.chain.value,
        pair_address=event.pair_address,
        venue=event.venue,
        asset0=f"{event.asset0.symbol} ({event.asset0.address})",
        asset1=f"{event.asset1.symbol} ({event.asset1.address})",
        has_reference_asset=event.has_reference_asset,
        reference_reserve=event.liquidity.reference_reserve,
        liquidity_usd=round(event.liquidity.liquidity_usd, 2),
        block_number=event.block_number,
        **kwargs,
    )


def log_safety_verdict(
    logger: structlog.stdlib.BoundLogger,
    verdict: SafetyVerdict,
    **kwargs: Any,
) -> None:
    """记录安全评估结果。"""
    level = "info" if verdict.tradeable else "warning"
    getattr(logger, level)(
        "safety_verdict",
        chain=verdict.asset.chain.value,
        asset=verdict.asset.address,
        symbol=verdict.asset.symbol,
        tradeable=verdict.tradeable,
        warnings=verdict.warnings,
        blocking_reasons=verdict.blocking_reasons,
        quoted_price=verdict.quoted_price,
        **kwargs,
    )


def log_snipe_attempt(
    logger: structlog.stdlib.BoundLogger,
    *,
    chain: str,
    asset: str,
    amount: float,
    slippage_pct: float,
    simulated: bool,
    **kwargs: Any,
) -> None:
    """记录狙击尝试。"""
    logger.info(
        "snipe_attempt",
        chain=chain,
        asset=asset,
        amount=amount,
        slippage_pct=slippage_pct,
        simulated=simulated,
        **kwargs,
    )


def log_snipe_result(
    logger: structlog.stdlib.BoundLogger,
    result: Position | SnipeFailure,
    **kwargs: Any,
) -> None:
    """记录狙击结果（成功为仓位，失败为 SnipeFailure）。"""
    if isinstance(result, SnipeFailure):
        logger.warning(
            "snipe_result",
            success=False,
            chain=result.chain.value,
            asset=result.asset.address,
            reason=result.reason,
            detail=result.detail,
            **kwargs,
        )
        return
    logger.info(
        "snipe_result",
        success=True,
        chain=result.chain.value,
        asset=result.asset.address,
        position_id=result.position_id,
        entry_price=result.entry_price,
        quantity=result.quantity,
        simulated=result.simulated,
        tx_hash=result.entry_tx,
        **kwargs,
    )


def log_position_opened(
    logger: structlog.stdlib.BoundLogger,
    position: Position,
    **kwargs: Any,
) -> None:
    """记录仓位建立。"""
    logger.info(
        "position_opened",
        position_id=position.position_id,
        chain=position.chain.value,
        asset=position.asset.address,
        symbol=position.asset.symbol,
        entry_amount=position.entry_amount,
        entry_price=position.entry_price,
        take_profit_price=position.take_profit_price,
        stop_loss_price=position.stop_loss_price,
        simulated=position.simulated,
        **kwargs,
    )


def log_position_closed(
    logger: structlog.stdlib.BoundLogger,
    position: Position,
    result: CloseResult,
    **kwargs: Any,
) -> None:
    """记录仓位关闭。"""
    logger.info(
        "position_closed",
        position_id=position.position_id,
        chain=position.chain.value,
        asset=position.asset.address,
        reason=result.reason.value,
        sell_amount=result.sell_amount,
        tx_hash=result.receipt.tx_hash if result.receipt else None,
        simulated=position.simulated,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
