import argparse
import asyncio
import signal
import sys

from hlcopy.core.engine import CopyEngine
from hlcopy.core.health import HealthMonitor
from hlcopy.core.hyperliquid_gateway import HyperliquidGateway
from hlcopy.notifications import CompositeSink, TelegramSink, TradeJournalSink
from hlcopy.utils.config import Config, load_config
from hlcopy.utils.errors import CopyBotError, format_error
from hlcopy.utils.logger import setup_logger


def build_notifier(cfg: Config) -> CompositeSink:
    sinks = [TradeJournalSink(cfg.logging.trades_csv_path)]
    if cfg.telegram.enabled:
        sinks.append(TelegramSink(cfg.telegram.bot_token, cfg.telegram.chat_id))
    return CompositeSink(sinks)


async def validate_setup(cfg: Config, logger) -> int:
    """Setup check: config, credentials and both accounts reachable."""
    try:
        gateway = HyperliquidGateway(cfg)
    except CopyBotError as exc:
        logger.error(f"Validation failed: {exc}")
        return 1
    try:
        logger.info(f"Configuration OK: {cfg.summary()}")
        logger.info(f"Our address: {gateway.address}")
        ours = await gateway.get_account_equity(gateway.address)
        logger.info(f"Our account value: {ours.account_value}")
        theirs = await gateway.get_account_equity(cfg.target_wallet)
        logger.info(f"Target account value: {theirs.account_value}")
        if ours.value <= 0:
            logger.warning("Our account has no equity, every copy will be rejected")
        logger.info("All checks passed, ready to start")
        return 0
    except CopyBotError as exc:
        logger.error(f"Validation failed: {format_error(exc)}")
        return 1
    finally:
        await gateway.close()


async def run(cfg: Config, logger) -> int:
    notifier = build_notifier(cfg)
    try:
        gateway = HyperliquidGateway(cfg)
    except CopyBotError as exc:
        logger.error(f"Failed to start: {exc}")
        await notifier.error(f"Failed to start: {exc}", {"stage": "startup"})
        return 1

    try:
        equity = await gateway.get_account_equity(gateway.address)
        logger.info(f"Account verified: {gateway.address} value={equity.account_value}")
    except CopyBotError as exc:
        logger.error(f"Account verification failed: {format_error(exc)}")
        await notifier.error(f"Account verification failed: {exc}", {"address": gateway.address})
        await gateway.close()
        return 1

    health = None
    if cfg.health.enabled:
        health = HealthMonitor(
            gateway,
            gateway.address,
            cfg.target_wallet,
            interval=cfg.health.interval_minutes * 60,
            drift_threshold=cfg.health.drift_threshold,
            notifier=notifier,
        )
    engine = CopyEngine(gateway, cfg, notifier=notifier, health=health)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await engine.start()
    except CopyBotError as exc:
        logger.error(f"Failed to start copy engine: {format_error(exc)}")
        await notifier.error(f"Failed to start copy engine: {exc}", {"stage": "startup"})
        await gateway.close()
        return 1

    await notifier.startup(cfg.summary())
    logger.info("Copy trader running (Ctrl+C to stop)")

    waiters = [asyncio.create_task(stop_event.wait()), asyncio.create_task(engine.failed.wait())]
    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for w in waiters:
        w.cancel()

    if engine.failed.is_set():
        logger.error("Fill stream failed, shutting down")
    else:
        logger.info("Shutdown requested")

    await engine.stop()
    await notifier.shutdown()
    await gateway.close()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)
    return 1 if engine.failed.is_set() else 0


def main():
    parser = argparse.ArgumentParser(description="Mirror a Hyperliquid wallet's trades onto your own account")
    parser.add_argument("--config", default=None, help="YAML config file (env vars override it)")
    parser.add_argument("--validate", action="store_true", help="check config and connectivity, then exit")
    parser.add_argument("--dry-run", action="store_true", help="log orders instead of placing them")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except CopyBotError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    if args.dry_run:
        cfg = cfg.model_copy(update={"dry_run": True})

    logger = setup_logger(cfg.logging.log_dir, cfg.logging.level)
    logger.info(f"Loaded config: {cfg.summary()}")

    if args.validate:
        sys.exit(asyncio.run(validate_setup(cfg, logger)))
    sys.exit(asyncio.run(run(cfg, logger)))


if __name__ == "__main__":
    main()
