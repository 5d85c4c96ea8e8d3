"""Tests covering the utilities modules."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from convoflow.services.settings import Settings
from convoflow.utils import awaitables, logging as logging_utils


def test_setup_logging_creates_rotating_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(
        level=logging.INFO,
        log_dir=log_dir,
        console=False,
        force=True,
    )

    logger = logging.getLogger("convoflow.tests")
    logger.info("Logging smoke test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == log_dir / "convoflow.log"
    assert logging_utils.get_log_path() == log_path
    contents = log_path.read_text(encoding="utf-8")
    assert "Logging smoke test" in contents
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_respects_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CONVOFLOW_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path.parent == tmp_path / "env-logs"
    assert log_path.parent.is_dir()


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)

    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second == first
    assert not (tmp_path / "b").exists()



def test_records_carry_the_active_request_id(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(level=logging.INFO, log_dir=tmp_path, console=False, force=True)
    logger = logging.getLogger("convoflow.tests")

    logger.info("outside any turn")
    with logging_utils.request_context("req-7"):
        assert logging_utils.current_request_id() == "req-7"
        logger.info("inside the turn")
    assert logging_utils.current_request_id() is None
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert any(line.endswith("outside any turn") and " | - | " in line for line in lines)
    assert any(line.endswith("inside the turn") and " | req-7 | " in line for line in lines)


def test_debug_logging_setting_selects_level(tmp_path: Path) -> None:
    logging_utils.setup_logging(
        settings=Settings(debug_logging=True), log_dir=tmp_path, console=False, force=True
    )

    assert logging.getLogger().level == logging.DEBUG

    logging_utils.setup_logging(settings=Settings(), log_dir=tmp_path, console=False, force=True)

    assert logging.getLogger().level == logging.INFO

@pytest.mark.asyncio
async def test_call_maybe_async_handles_both_kinds() -> None:
    seen: list[str] = []

    def sync_callback(value: str) -> str:
        seen.append(f"sync:{value}")
        return value

    async def async_callback(value: str) -> str:
        seen.append(f"async:{value}")
        return value

    assert await awaitables.call_maybe_async(sync_callback, "a") == "a"
    assert await awaitables.call_maybe_async(async_callback, "b") == "b"
    assert await awaitables.call_maybe_async(None, "c") is None
    assert seen == ["sync:a", "async:b"]
