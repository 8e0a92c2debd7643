import logging

import orjson

from solwatch import logging_utils
from solwatch.logging_utils import (
    JsonFormatter,
    configure_api_logging,
    configure_runtime_logging,
    reset_warn_once_cache,
    warn_once_per,
    write_api_log_once,
)


def test_write_api_log_once_writes_each_key_once(tmp_path):
    configure_api_logging(enabled=True, directory=tmp_path)
    first = write_api_log_once("helius", "sig/1", {"a": 1})
    second = write_api_log_once("helius", "sig/1", {"a": 2})
    assert first == tmp_path / "helius_sig_1.txt"
    assert second is None
    assert orjson.loads(first.read_bytes()) == {"a": 1}


def test_write_api_log_once_disabled(tmp_path):
    configure_api_logging(enabled=False, directory=tmp_path)
    assert write_api_log_once("jupiter", "M", {"a": 1}) is None
    assert list(tmp_path.iterdir()) == []


def test_json_formatter_includes_extra():
    record = logging.LogRecord("solwatch.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
    record.mint = "M"
    payload = orjson.loads(JsonFormatter().format(record))
    assert payload["msg"] == "hello world"
    assert payload["level"] == "INFO"
    assert payload["mint"] == "M"
    assert payload["ts"].endswith("Z")


def test_warn_once_per_throttles(caplog):
    reset_warn_once_cache()
    logger = logging.getLogger("solwatch.test.throttle")
    with caplog.at_level(logging.WARNING):
        assert warn_once_per(5, "k", "provider down %s", 1, logger=logger) is True
        assert warn_once_per(5, "k", "provider down %s", 2, logger=logger) is False
        assert warn_once_per(0, "k", "provider down %s", 3, logger=logger) is True
    assert caplog.text.count("provider down") == 2


def test_configure_runtime_logging_creates_file(tmp_path, monkeypatch):
    monkeypatch.delenv("LOG_FILE", raising=False)
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        path = configure_runtime_logging(level="DEBUG", console=False, log_dir=tmp_path, api_responses=True)
        assert path == (tmp_path / logging_utils.RUNTIME_LOG_NAME).resolve()
        assert root.level == logging.DEBUG
        assert logging_utils._API_LOG_STATE["enabled"] is True
        assert logging_utils._API_LOG_STATE["dir"] == tmp_path / "api"
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
