"""Tests for log events."""
from __future__ import annotations

import pytest
import structlog
from structlog.testing import capture_logs

from sqla_populate import ORM, log
from tests.utils import domain


def test_configure_json(capsys: pytest.CaptureFixture[str]) -> None:
    log.configure(level="INFO", fmt="json")
    structlog.get_logger().info("hello", answer=42)
    structlog.get_logger().debug("hidden")
    out = capsys.readouterr().out
    assert '"event": "hello"' in out
    assert '"answer": 42' in out
    assert "hidden" not in out


def test_flush_events() -> None:
    with ORM(domain.registry) as orm:
        orm.schema.create_schema()
        with capture_logs() as logs:
            orm.em.create(domain.Author, {"name": "Stephen King"})
            orm.em.flush()
    completed = [entry for entry in logs if entry["event"] == "flush_completed"]
    assert completed == [
        {"event": "flush_completed", "log_level": "info", "inserted": 1, "updated": 0, "deleted": 0}
    ]


def test_query_events() -> None:
    with ORM(domain.registry, debug=True) as orm:
        orm.schema.create_schema()
        with capture_logs() as logs:
            orm.em.count(domain.Author)
    (query,) = [entry for entry in logs if entry["event"] == "query"]
    assert query["statement"].lstrip().upper().startswith("SELECT COUNT")
    assert query["executemany"] is False
