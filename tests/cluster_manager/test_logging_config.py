"""
Tests for logging setup.
"""

import json
import logging

import pytest

from cluster_manager.logging_config import (
    API_ACCESS_LOGGER,
    LIFECYCLE_LOGGER,
    StructuredFormatter,
    log_cluster_operation,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield
    for name in ("", LIFECYCLE_LOGGER, API_ACCESS_LOGGER, "cluster_manager.health"):
        logger = logging.getLogger(name or None)
        for handler in list(logger.handlers):
            if handler not in saved[0]:
                handler.close()
                logger.removeHandler(handler)
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    logging.getLogger(API_ACCESS_LOGGER).propagate = True


def test_log_files_created(tmp_path, restore_logging):
    setup_logging(log_dir=str(tmp_path), console_level="WARNING")
    log_cluster_operation("create", "plant-7", {"nodes": 3})
    logging.getLogger("cluster_manager.health.monitor").error("probe failed")

    assert "Cluster operation: create [plant-7]" in (tmp_path / "cluster-lifecycle.log").read_text()
    assert "probe failed" in (tmp_path / "health.log").read_text()
    assert "probe failed" in (tmp_path / "error.log").read_text()
    assert "create [plant-7]" in (tmp_path / "manager.log").read_text()


def test_json_lines(tmp_path, restore_logging):
    setup_logging(log_dir=str(tmp_path), console_level="WARNING", use_json=True)
    log_cluster_operation("terminate", "plant-7")

    line = (tmp_path / "cluster-lifecycle.log").read_text().splitlines()[-1]
    entry = json.loads(line)

    assert entry["cluster_id"] == "plant-7"
    assert entry["operation"] == "terminate"
    assert entry["level"] == "INFO"


def test_structured_formatter_includes_extras():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "GET /health 200", None, None)
    record.duration_ms = 1.5

    entry = json.loads(StructuredFormatter().format(record))

    assert entry["message"] == "GET /health 200"
    assert entry["duration_ms"] == 1.5
