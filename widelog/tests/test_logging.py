# widelog/tests/test_logging.py
import io
import json
import logging

from widelog.logging import JSONFormatter, configure_json_logging


def _record(msg="hello %s", args=("world",), exc_info=None, **extra):
    rec = logging.LogRecord("widelog.test", logging.WARNING, __file__, 1, msg, args, exc_info)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_formatter_emits_compact_json_with_extras():
    line = JSONFormatter().format(_record(sink="axiom", attempt=2))
    evt = json.loads(line)
    assert evt["lvl"] == "WARNING"
    assert evt["logger"] == "widelog.test"
    assert evt["msg"] == "hello world"
    assert evt["sink"] == "axiom"
    assert evt["attempt"] == 2
    assert evt["ts"].endswith("Z")
    assert "\n" not in line


def test_formatter_includes_exception_fields():
    try:
        raise RuntimeError("sink down")
    except RuntimeError:
        import sys

        info = sys.exc_info()
    evt = json.loads(JSONFormatter().format(_record(exc_info=info)))
    assert evt["exc_type"] == "RuntimeError"
    assert evt["exc_message"] == "sink down"
    assert "Traceback" in evt["stack"]

    bare = json.loads(JSONFormatter(include_stack=False).format(_record(exc_info=info)))
    assert "stack" not in bare


def test_long_strings_are_truncated():
    evt = json.loads(JSONFormatter().format(_record(msg="x" * 10000, args=())))
    assert evt["msg"].endswith("...<truncated>")
    assert len(evt["msg"]) < 10000


def test_configure_json_logging_routes_named_logger():
    buf = io.StringIO()
    lg = configure_json_logging("debug", stream=buf, logger_name="widelog.test_configure")
    try:
        logging.getLogger("widelog.test_configure.child").debug("ready", extra={"drains": 2})
        evt = json.loads(buf.getvalue().strip())
        assert evt["msg"] == "ready"
        assert evt["drains"] == 2
        assert evt["lvl"] == "DEBUG"
        assert lg.propagate is False
    finally:
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(logging.NOTSET)
