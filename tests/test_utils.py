"""Tests for automationlab.utils."""

import json
import logging

import pytest

from automationlab.errors import PermanentError, TransientError
from automationlab.utils import StructuredFormatter, format_duration, retry_with_backoff, setup_logging


class TestRetryWithBackoff:
    def test_returns_first_success(self):
        assert retry_with_backoff(lambda: "ok", sleep=pytest.fail) == "ok"

    def test_retries_transient_with_growing_backoff(self):
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientError("DependencyViolation")
            return "deleted"

        result = retry_with_backoff(flaky, max_attempts=5, backoff_seconds=10, backoff_multiplier=1.5, sleep=sleeps.append)

        assert result == "deleted"
        assert sleeps == [10, 15]

    def test_gives_up_after_max_attempts(self):
        sleeps = []

        def always():
            raise TransientError("DependencyViolation")

        with pytest.raises(TransientError):
            retry_with_backoff(always, max_attempts=3, backoff_seconds=1, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_other_errors_propagate_immediately(self):
        sleeps = []

        def denied():
            raise PermanentError("UnauthorizedOperation")

        with pytest.raises(PermanentError):
            retry_with_backoff(denied, max_attempts=5, sleep=sleeps.append)
        assert sleeps == []


def test_structured_formatter_includes_extras():
    record = logging.LogRecord("automationlab.orchestrator", logging.INFO, __file__, 1, "Created %s", ("sg",), None)
    record.workspace = "dev"
    record.resource = "security_group"
    data = json.loads(StructuredFormatter().format(record))
    assert data["message"] == "Created sg"
    assert data["level"] == "INFO"
    assert data["workspace"] == "dev"
    assert data["resource"] == "security_group"
    assert data["timestamp"].endswith("Z")
    assert "step" not in data


def test_setup_logging_writes_json_lines(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    logger = setup_logging("DEBUG", "structured", log_file=log_file, console_output=False)
    logging.getLogger("automationlab.test").info("hello")
    for handler in logger.handlers:
        handler.flush()
    line = log_file.read_text().strip().splitlines()[-1]
    assert json.loads(line)["message"] == "hello"
    assert logger.level == logging.DEBUG
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []


@pytest.mark.parametrize("seconds,expected", [(5, "5.0s"), (150, "2m 30s"), (3720, "1h 2m")])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
