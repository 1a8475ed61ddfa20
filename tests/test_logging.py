"""
Structured logging tests.

Verifies:
- every line is one JSON object with ts, level, logger and message
- LogContext bindings (job, actor, case, contribution) reach each line
- engine operations log the identifiers of the rows they touch
- kernel exceptions are flattened into exc_* fields
- configure_logging installs exactly one structured handler
"""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from funding_kernel.domain.actor import UserActor
from funding_kernel.domain.case_lifecycle import CaseStatus
from funding_kernel.exceptions import InvalidCaseTransitionError
from funding_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _isolated_logging():
    """Start each test unconfigured and hand the suite's handlers back afterwards."""
    root = logging.getLogger("funding_kernel")
    saved_handlers = list(root.handlers)
    saved_level = root.level
    reset_logging()
    yield
    reset_logging()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


@pytest.fixture
def json_lines():
    """Configure logging onto a buffer; return a reader of the parsed lines."""
    stream = StringIO()
    configure_logging(stream=stream, level=logging.DEBUG)

    def _read() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _read


def _structured_handlers() -> list[logging.Handler]:
    root = logging.getLogger("funding_kernel")
    return [h for h in root.handlers if isinstance(h.formatter, StructuredFormatter)]


class TestLineFormat:

    def test_required_keys(self, json_lines):
        get_logger("services.contribution").info("contribution_submitted")

        (line,) = json_lines()
        assert line["level"] == "INFO"
        assert line["message"] == "contribution_submitted"
        assert line["logger"] == "funding_kernel.services.contribution"
        assert line["ts"].endswith("+00:00")

    def test_extra_values_are_serialized(self, json_lines):
        contribution_id = uuid4()
        get_logger("services.contribution").info(
            "contribution_approved",
            extra={"contribution_id": contribution_id, "roles": {"admin", "donor"}},
        )

        (line,) = json_lines()
        assert line["contribution_id"] == str(contribution_id)
        assert line["roles"] == ["admin", "donor"]

    def test_context_omitted_when_unbound(self, json_lines):
        get_logger("batch").info("tick")

        (line,) = json_lines()
        assert not {"job_name", "actor_id", "case_id", "correlation_id"} & line.keys()


class TestContextBindings:

    def test_job_name_binding(self, json_lines):
        logger = get_logger("batch.jobs")
        with LogContext.bind(job_name="auto_closure"):
            logger.info("job_completed")
        logger.info("idle")

        bound, unbound = json_lines()
        assert bound["job_name"] == "auto_closure"
        assert "job_name" not in unbound

    def test_nested_bindings_restore_outer_actor(self, json_lines):
        admin, donor = uuid4(), uuid4()
        logger = get_logger("services")
        with LogContext.bind(actor_id=admin):
            with LogContext.bind(actor_id=donor, case_id=uuid4()):
                logger.info("inner")
            logger.info("outer")

        inner, outer = json_lines()
        assert inner["actor_id"] == str(donor)
        assert outer["actor_id"] == str(admin)
        assert "case_id" not in outer

    def test_unknown_keys_and_none_are_dropped(self):
        with LogContext.bind(job_name="cycle_advancement", operation="x", case_id=None):
            assert LogContext.get_all() == {"job_name": "cycle_advancement"}

    def test_record_extra_does_not_override_context(self, json_lines):
        with LogContext.bind(case_id="bound"):
            get_logger("services").info("change", extra={"case_id": "extra"})

        (line,) = json_lines()
        assert line["case_id"] == "bound"


class TestEngineLogs:

    def test_status_change_carries_case_id(self, cases, users, captured_logs):
        case = cases.create_case("School fees", "500", UserActor(users.donor))
        cases.change_status(case.case_id, CaseStatus.SUBMITTED, UserActor(users.donor))

        changed = [r for r in captured_logs() if r["message"] == "case_status_changed"]
        assert changed[-1]["case_id"] == str(case.case_id)
        assert changed[-1]["to_status"] == CaseStatus.SUBMITTED.value

    def test_submission_carries_contribution_id(
        self, published_case, contributions, users, captured_logs,
    ):
        case = published_case("1000.00")
        snapshot = contributions.submit(
            UserActor(users.donor), "40", "card", case_id=case.case_id,
        )

        submitted = [r for r in captured_logs() if r["message"] == "contribution_submitted"]
        assert submitted[-1]["contribution_id"] == str(snapshot.contribution_id)
        assert submitted[-1]["amount"] == "40.00"


class TestExceptionFields:

    def test_kernel_exception_is_flattened(self, json_lines):
        try:
            raise InvalidCaseTransitionError("case-1", "draft", "published")
        except InvalidCaseTransitionError:
            get_logger("services.case_lifecycle").exception("operation_rejected")

        (line,) = json_lines()
        assert line["level"] == "ERROR"
        assert line["exc_type"] == "InvalidCaseTransitionError"
        assert line["exc_code"] == "INVALID_CASE_TRANSITION"
        assert line["exc_kind"] == "INVALID_TRANSITION"
        assert line["exc_case_id"] == "case-1"
        assert line["exc_to_status"] == "published"
        assert "Traceback" in line["traceback"]


class TestConfigureLogging:

    def test_second_call_adds_no_handler(self):
        first, second = StringIO(), StringIO()
        configure_logging(stream=first)
        configure_logging(stream=second)

        assert len(_structured_handlers()) == 1
        get_logger("x").info("once")
        assert first.getvalue()
        assert not second.getvalue()

    def test_level_filters_debug(self):
        stream = StringIO()
        configure_logging(stream=stream, level=logging.INFO)
        logger = get_logger("batch")
        logger.debug("hidden")
        logger.info("shown")

        messages = [json.loads(line)["message"] for line in stream.getvalue().splitlines()]
        assert messages == ["shown"]

    def test_reset_allows_reconfiguration(self):
        configure_logging(stream=StringIO())
        reset_logging()

        assert _structured_handlers() == []
        configure_logging(stream=StringIO())
        assert len(_structured_handlers()) == 1
