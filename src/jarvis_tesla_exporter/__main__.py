"""Process entry point: ``python -m jarvis_tesla_exporter``.

Usage
-----
Configure with a YAML file or ``TESLA_*`` environment variables::

    export TESLA_REFRESH_TOKEN="..."
    jarvis-tesla-exporter

    jarvis-tesla-exporter --config config.yaml

Options::

    --config FILE   Read configuration from a YAML file
    --once          Poll every vehicle once, print the metrics and exit
    --verbose, -v   Enable debug logging

SIGTERM and SIGINT stop the exporter. SIGHUP re-reads the config file and,
if the refresh token changed or polling was halted, resumes with it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from jarvis_tesla_exporter.client import TeslaClient
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.credentials import CredentialManager
from jarvis_tesla_exporter.exceptions import AuthError, ConfigError
from jarvis_tesla_exporter.exporter import Exporter
from jarvis_tesla_exporter.poller import VehiclePoller
from jarvis_tesla_exporter.ratelimit import RateLimiter
from jarvis_tesla_exporter.scheduler import Scheduler
from jarvis_tesla_exporter.state.cache import MetricCache
from jarvis_tesla_exporter.state.device import DeviceRegistry

_logger = logging.getLogger("jarvis_tesla_exporter")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jarvis-tesla-exporter",
        description="Poll the Tesla owner API and expose vehicle metrics for Prometheus.",
    )
    parser.add_argument("--config", "-c", type=Path, help="YAML configuration file (default: TESLA_* env vars)")
    parser.add_argument("--once", action="store_true", help="Poll every vehicle once, print the metrics and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def load_config(path: Path | None) -> ExporterConfig:
    if path is not None:
        return ExporterConfig.from_file(path)
    return ExporterConfig.from_env()


async def _reload(scheduler: Scheduler, path: Path, applied_token: str) -> str:
    """Re-read *path* and resume with its refresh token; return the token in use."""
    try:
        fresh = load_config(path)
    except ConfigError as exc:
        _logger.error("Ignoring SIGHUP, config reload failed: %s", exc)
        return applied_token
    if scheduler.halted or fresh.refresh_token != applied_token:
        await scheduler.resume(fresh.refresh_token)
        return fresh.refresh_token
    _logger.info("SIGHUP: refresh token unchanged, nothing to do")
    return applied_token


async def run(config: ExporterConfig, *, once: bool = False, config_path: Path | None = None) -> int:
    limiter = RateLimiter(config.rate_limits())
    cache = MetricCache(stale_after=config.stale_after)
    registry = DeviceRegistry()

    async with TeslaClient(config) as client:
        credentials = CredentialManager(client, config.refresh_token, safety_margin=config.token_safety_margin)
        poller = VehiclePoller(client, credentials, limiter, cache, registry, config)
        exporter = Exporter(cache, registry, config, limiter=limiter)
        scheduler = Scheduler(poller, credentials, config)

        if once:
            try:
                await scheduler.poll_all_once()
            except AuthError as exc:
                _logger.error("Refresh token rejected: %s", exc)
                registry.account_error = str(exc)
            sys.stdout.write(exporter.render().decode("utf-8"))
            return 1 if registry.account_error else 0

        loop = asyncio.get_running_loop()
        reloads: set[asyncio.Task[None]] = set()
        applied_token = config.refresh_token

        async def _reload_and_track(path: Path) -> None:
            nonlocal applied_token
            applied_token = await _reload(scheduler, path, applied_token)

        def _on_stop() -> None:
            _logger.info("Shutdown signal received")
            scheduler.stop_event.set()

        def _on_reload() -> None:
            if config_path is None:
                _logger.info("SIGHUP ignored: configuration comes from the environment")
                return
            task = loop.create_task(_reload_and_track(config_path))
            reloads.add(task)
            task.add_done_callback(reloads.discard)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _on_stop)
        loop.add_signal_handler(signal.SIGHUP, _on_reload)

        runner = await exporter.start_server()
        try:
            await scheduler.run()
        finally:
            await runner.cleanup()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        parser.exit(2, f"{parser.prog}: error: {exc}\n")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(config, once=args.once, config_path=args.config))


if __name__ == "__main__":
    sys.exit(main())
