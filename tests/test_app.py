"""
App factory, configuration and logging tests.
"""

import json
import logging
import sys

import pytest

from approval_engine import create_app
from approval_engine.config import ProductionConfig, TestingConfig
from approval_engine.middleware.logging_config import JSONFormatter, ReadableFormatter
from approval_engine.services.chain_builder import ChainBuilder
from approval_engine.services.directory import SqlDirectory, StaticDirectory
from approval_engine.services.engine import EXTENSION_KEY, get_engine, init_engine
from approval_engine.services.notification import InAppNotificationPort, LoggingNotificationPort

from conftest import FINANCE, ORG_CHART, PRESIDENT, SUPPLY


def _record(msg="Chain 4 advanced", **extra):
    record = logging.LogRecord("approval_engine.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFactory:
    def test_engine_registered(self, app):
        engine = app.extensions[EXTENSION_KEY]
        assert get_engine() is engine
        assert isinstance(engine.directory, SqlDirectory)
        assert isinstance(engine.notifier, InAppNotificationPort)
        assert isinstance(engine.builder, ChainBuilder)

    def test_builder_reads_role_holders_from_config(self, app):
        builder = get_engine().builder
        assert builder.role_holders == {
            "finance_officer": FINANCE,
            "business_head": PRESIDENT,
            "supply_chain_coordinator": SUPPLY,
        }
        assert builder.grading_fallback_key == PRESIDENT
        assert builder.max_levels == 10

    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == TestingConfig.SQLALCHEMY_DATABASE_URI

    def test_directory_file_selects_static_directory(self, tmp_path):
        path = tmp_path / "org.json"
        path.write_text(json.dumps({"people": ORG_CHART}), encoding="utf-8")

        other = create_app("testing")
        other.config["APPROVAL_DIRECTORY_FILE"] = str(path)
        other.config["APPROVAL_NOTIFICATIONS"] = "log"
        engine = init_engine(other)
        assert isinstance(engine.directory, StaticDirectory)
        assert isinstance(engine.notifier, LoggingNotificationPort)
        assert len(engine.directory) == len(ORG_CHART)

    def test_get_engine_without_init(self):
        from flask import Flask

        bare = Flask("bare")
        with bare.app_context():
            with pytest.raises(RuntimeError):
                get_engine()

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError):
            ProductionConfig()


class TestLogging:
    def test_json_formatter_lifts_extras(self):
        out = json.loads(JSONFormatter().format(
            _record(chain_id=4, level=2, approver_key="alice@corp.example", event_type="advanced"),
        ))
        assert out["level"] == "INFO"
        assert out["message"] == "Chain 4 advanced"
        assert out["chain_id"] == 4
        assert out["step_level"] == 2
        assert out["approver_key"] == "alice@corp.example"
        assert out["event_type"] == "advanced"
        assert "workflow_kind" not in out

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()
        out = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in out["exception"]

    def test_readable_formatter_appends_extras(self):
        line = ReadableFormatter().format(_record(chain_id=4, workflow_kind="purchase"))
        assert "Chain 4 advanced" in line
        assert "[chain_id=4 workflow_kind=purchase]" in line

    def test_readable_formatter_without_extras(self):
        line = ReadableFormatter().format(_record("plain"))
        assert line.endswith("approval_engine.test: plain")
