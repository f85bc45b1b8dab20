#!/usr/bin/env python3
"""Namespaced loggers, per-component levels and log-line abbreviation."""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from logging_utils import ROOT_LOGGER, get_logger, setup_logging, short_ref  # noqa: E402


def test_component_loggers_live_under_namespace_root() -> None:
    log = get_logger("lu_component_a")
    assert log.name == "tradesync.lu_component_a"
    assert log.handlers == []
    assert log.propagate
    assert logging.getLogger(ROOT_LOGGER).handlers
    assert get_logger("tradesync.lu_component_a") is log


def test_component_level_overrides(monkeypatch) -> None:
    monkeypatch.setenv("TRADESYNC_LOG_LEVELS", "lu_noisy=WARNING, lu_chatty=10, bogus, lu_bad=LOUD")
    assert get_logger("lu_noisy").level == logging.WARNING
    assert get_logger("lu_chatty").level == logging.DEBUG
    assert get_logger("lu_bad").level == logging.NOTSET
    assert get_logger("lu_explicit", level=logging.ERROR).level == logging.ERROR


def test_setup_logging_replaces_handlers(tmp_path) -> None:
    log_file = tmp_path / "tradesync.log"
    root = setup_logging(log_file=str(log_file), verbose=True)
    assert root.name == ROOT_LOGGER
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 2

    root = setup_logging()
    assert len(root.handlers) == 1
    assert root.level == logging.INFO


def test_short_ref() -> None:
    assert short_ref("0x" + "ab" * 32) == "0xabab…abab"
    assert short_ref("5igSig") == "5igSig"
    assert short_ref(None) == ""
