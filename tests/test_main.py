from __future__ import annotations

from pathlib import Path

import pytest
from fakes import Engine

from jarvis_tesla_exporter.__main__ import _reload, build_parser
from jarvis_tesla_exporter.scheduler import Scheduler


def _write_config(tmp_path: Path, token: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(f"refreshToken: {token}\nvehicleIds: ['1001']\n", encoding="utf-8")
    return path


def test_parser_options() -> None:
    args = build_parser().parse_args(["-c", "config.yaml", "--once", "-v"])

    assert args.config == Path("config.yaml")
    assert args.once is True
    assert args.verbose is True


@pytest.mark.asyncio
async def test_reload_resumes_a_halted_account(engine: Engine, tmp_path: Path) -> None:
    scheduler = Scheduler(engine.poller, engine.credentials, engine.config, clock=engine.clock)
    engine.registry.account_error = "invalid_grant"

    applied = await _reload(scheduler, _write_config(tmp_path, "refresh-new"), "refresh-0")

    assert applied == "refresh-new"
    assert scheduler.halted is False
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_reload_with_unchanged_token_is_a_no_op(engine: Engine, tmp_path: Path) -> None:
    scheduler = Scheduler(engine.poller, engine.credentials, engine.config, clock=engine.clock)

    applied = await _reload(scheduler, _write_config(tmp_path, "refresh-0"), "refresh-0")

    assert applied == "refresh-0"
    assert scheduler.tasks == {}


@pytest.mark.asyncio
async def test_reload_keeps_running_when_the_file_is_invalid(engine: Engine, tmp_path: Path) -> None:
    scheduler = Scheduler(engine.poller, engine.credentials, engine.config, clock=engine.clock)
    engine.registry.account_error = "invalid_grant"

    applied = await _reload(scheduler, tmp_path / "missing.yaml", "refresh-0")

    assert applied == "refresh-0"
    assert scheduler.halted is True
