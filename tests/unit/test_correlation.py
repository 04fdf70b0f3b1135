import logging
import re

from l1beat.observability.logging_config import _ContextFilter
from l1beat.utils.correlation import (
    CorrelationContext,
    generate_correlation_id,
    get_correlation_id,
    get_job_name,
    log_context,
)


def test_generate_correlation_id_uuid_format():
    cid = generate_correlation_id()
    assert re.match(r"^[0-9a-f\-]{36}$", cid)


def test_context_manager_sets_and_resets():
    prev = get_correlation_id()
    with CorrelationContext(job="daily", correlation_id="custom-123") as cid:
        assert cid == "custom-123"
        assert get_correlation_id() == "custom-123"
        assert get_job_name() == "daily"
        assert log_context(chunk=2) == {
            "correlation_id": "custom-123",
            "job": "daily",
            "chunk": 2,
        }
    assert get_correlation_id() == prev
    assert get_job_name() is None


def test_nested_contexts_restore_outer():
    with CorrelationContext(job="weekly") as outer:
        with CorrelationContext(job="backfill") as inner:
            assert get_correlation_id() == inner
            assert get_job_name() == "backfill"
        assert get_correlation_id() == outer
        assert get_job_name() == "weekly"


def test_log_context_outside_job_has_only_extra():
    assert log_context(day=3) == {"day": 3}


def test_context_filter_stamps_records():
    record = logging.LogRecord("l1beat.test", logging.INFO, __file__, 1, "msg", None, None)
    with CorrelationContext(job="daily", correlation_id="cid-1"):
        assert _ContextFilter("l1beat-ingest").filter(record) is True

    assert record.correlation_id == "cid-1"
    assert record.job == "daily"
    assert record.service == "l1beat-ingest"
