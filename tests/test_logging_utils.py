import json
import logging
import sys

from memefeed.logging_utils import (
    JsonFormatter,
    configure_logging,
    serialize_for_log,
    warn_once_per,
)


def _restore(root, original_handlers, original_level):
    for handler in list(root.handlers):
        if handler not in original_handlers:
            root.removeHandler(handler)
            try:
                handler.close()
            except Exception:
                pass
    for handler in original_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(original_level)
    if hasattr(root, "_memefeed_stdout_handler"):
        delattr(root, "_memefeed_stdout_handler")


def test_configure_logging_installs_single_stdout_handler():
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler(getattr(sys, "__stdout__", sys.stdout)))

        handler = configure_logging(level="debug", json_logs=False)
        again = configure_logging(level="INFO", json_logs=True)

        stream_handlers = [h for h in root.handlers if isinstance(h, logging.StreamHandler)]
        assert stream_handlers == [handler]
        assert again is handler
        assert handler.stream is sys.stdout
        assert isinstance(handler.formatter, JsonFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("werkzeug").level == logging.WARNING
    finally:
        _restore(root, original_handlers, original_level)


def test_configure_logging_reads_env(monkeypatch):
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_JSON", "1")
    try:
        handler = configure_logging()
        assert root.level == logging.WARNING
        assert isinstance(handler.formatter, JsonFormatter)
    finally:
        _restore(root, original_handlers, original_level)


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("memefeed.test", logging.WARNING, __file__, 10, "dropped %d", (2,), None)
    record.feed = "gmgn"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "dropped 2"
    assert payload["level"] == "WARNING"
    assert payload["feed"] == "gmgn"
    assert payload["ts"].endswith("Z")


def test_warn_once_per_rate_limits(caplog):
    log = logging.getLogger("memefeed.test.warn")
    with caplog.at_level(logging.WARNING, logger="memefeed.test.warn"):
        assert warn_once_per(60, "k", "first %s", "a", logger=log) is True
        assert warn_once_per(60, "k", "second", logger=log) is False
        assert warn_once_per(60, "other", "third", logger=log) is True
    assert [r.getMessage() for r in caplog.records] == ["first a", "third"]


def test_serialize_for_log_truncates():
    text = serialize_for_log({"blob": b"123", "s": "x" * 300}, max_string=10)
    data = json.loads(text)
    assert data["blob"] == "<3 bytes>"
    assert data["s"].startswith("xxxxxxxxxx...")
