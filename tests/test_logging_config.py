import json
import logging

from answerbot.logging_config import JSONFormatter, LoggerAdapter, get_logger


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def capture(name: str):
    logger = get_logger(name)
    handler = CapturingHandler()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler


class TestJSONFormatter:
    def test_context_is_emitted(self):
        record = logging.LogRecord("answerbot.job_queue", logging.INFO, __file__, 1, "Job enqueued", None, None)
        record.context = {"job_id": "U1-1700000000", "token": "abc"}

        data = json.loads(JSONFormatter().format(record))

        assert data["logger"] == "answerbot.job_queue"
        assert data["message"] == "Job enqueued"
        assert data["context"] == {"job_id": "U1-1700000000", "token": "abc"}


class TestLoggerAdapter:
    def test_call_context_merges_over_bound_keys(self):
        logger, handler = capture("adapter_test")
        try:
            log = LoggerAdapter(logger, {"job_id": "U1-1700000000", "channel": "C1"})
            log.info("Worker state transition", context={"state": "fetching", "channel": "C2"})
        finally:
            logger.removeHandler(handler)

        assert handler.records[0].context == {"job_id": "U1-1700000000", "channel": "C2", "state": "fetching"}

    def test_logger_names_are_namespaced(self):
        assert get_logger("worker").name == "answerbot.worker"
