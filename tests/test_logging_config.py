import json
import logging

from tutor.logging_config import AUDIT_LOGGER_NAME, MinimalJSONFormatter, configure_logging
from tutor.telemetry import emit_exception, log_event


def test_formatter_merges_dict_messages():
    record = logging.LogRecord("tutor.test", logging.INFO, __file__, 1, {"step": "x", "count": 2}, None, None)

    payload = json.loads(MinimalJSONFormatter().format(record))

    assert payload["step"] == "x"
    assert payload["count"] == 2
    assert payload["level"] == "INFO"
    assert payload["ts"].endswith("Z")


def test_formatter_keeps_plain_messages():
    record = logging.LogRecord("tutor.test", logging.WARNING, __file__, 1, "hello %s", ("world",), None)

    payload = json.loads(MinimalJSONFormatter().format(record))

    assert payload["message"] == "hello world"


def test_audit_events_are_written_as_json_lines(tmp_path):
    configure_logging(tmp_path, level="INFO")

    logging.getLogger(AUDIT_LOGGER_NAME).info({"event": "ingest", "document_id": "physics-9"})
    for handler in logging.getLogger(AUDIT_LOGGER_NAME).handlers:
        handler.flush()

    lines = (tmp_path / "ingest_audit.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["document_id"] == "physics-9"


def test_log_event_schema(caplog):
    logger = logging.getLogger("tutor.schema-test")
    logger.propagate = True

    with caplog.at_level(logging.INFO, logger="tutor.schema-test"):
        log_event(logger, "retriever.search", req_id="r1", duration_ms=1.23456, details={"k": 5})

    event = caplog.records[-1].msg
    assert event == {
        "step": "retriever.search",
        "module": "tutor.schema-test",
        "req_id": "r1",
        "duration_ms": 1.235,
        "details": {"k": 5},
    }


def test_exception_event_names_the_failing_module():
    records: list[logging.LogRecord] = []

    class Collector(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger("tutor.telemetry")
    collector = Collector()
    previous_level = logger.level
    logger.addHandler(collector)
    logger.setLevel(logging.INFO)
    try:
        emit_exception(module="tutor.answerer.generate", error=KeyError("response"), req_id="r2")
    finally:
        logger.removeHandler(collector)
        logger.setLevel(previous_level)

    event = records[-1].msg
    assert event["step"] == "exception"
    assert event["module"] == "tutor.answerer.generate"
    assert event["details"]["error"] == "KeyError"
