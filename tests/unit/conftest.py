"""Pytest configuration for unit tests.

In-memory stand-ins for storage, time and the upstream paginator, shared by
the service tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from l1beat.models.results import FetchRangeResult
from l1beat.models.schemas import (
    DataType,
    JobError,
    JobState,
    JobStatus,
    MessageCountSnapshot,
    TeleporterMessage,
)

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _key(update_type: Any) -> str:
    return getattr(update_type, "value", update_type)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Async sleep that records requested delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class InMemoryJobStateRepository:
    """Dict-backed job state storage with the same conditional semantics."""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}

    def get(self, update_type: DataType) -> Optional[JobState]:
        doc = self.docs.get(_key(update_type))
        return JobState.model_validate(doc) if doc else None

    def save(self, state: JobState) -> None:
        self.docs[_key(state.update_type)] = state.to_document()

    def save_if_owner(self, state: JobState) -> bool:
        doc = self.docs.get(_key(state.update_type))
        if doc is None or doc.get("runId") != state.run_id:
            return False
        if doc["state"] != JobStatus.IN_PROGRESS.value:
            return False
        self.docs[_key(state.update_type)] = state.to_document()
        return True

    def mark_failed_if_stale(self, update_type, *, cutoff, error, now):
        return self._fail_where(
            update_type, lambda d: d["lastUpdatedAt"] < cutoff, error, now
        )

    def mark_failed_if_started_before(self, update_type, *, started_before, error, now):
        return self._fail_where(
            update_type, lambda d: d["startedAt"] < started_before, error, now
        )

    def fail_all_in_progress(self, *, error: JobError, now: datetime) -> int:
        count = 0
        for doc in self.docs.values():
            if doc["state"] == JobStatus.IN_PROGRESS.value:
                doc.update(
                    state=JobStatus.FAILED.value,
                    lastUpdatedAt=now,
                    error=error.to_document(),
                )
                count += 1
        return count

    def _fail_where(self, update_type, condition: Callable, error, now):
        doc = self.docs.get(_key(update_type))
        if doc is None or doc["state"] != JobStatus.IN_PROGRESS.value:
            return None
        if not condition(doc):
            return None
        doc.update(
            state=JobStatus.FAILED.value, lastUpdatedAt=now, error=error.to_document()
        )
        return JobState.model_validate(doc)


class InMemorySnapshotRepository:
    """List-backed snapshot storage."""

    def __init__(self) -> None:
        self.items: list[MessageCountSnapshot] = []

    def save(self, snapshot: MessageCountSnapshot) -> None:
        self.items.append(snapshot)

    def latest(self, data_type, *, since=None) -> Optional[MessageCountSnapshot]:
        matching = [
            s
            for s in self.items
            if s.data_type == _key(data_type)
            and (since is None or s.updated_at >= since)
        ]
        return max(matching, key=lambda s: s.updated_at) if matching else None

    def list_since(self, data_type, since) -> list[MessageCountSnapshot]:
        matching = [
            s
            for s in self.items
            if s.data_type == _key(data_type) and s.updated_at >= since
        ]
        return sorted(matching, key=lambda s: s.updated_at, reverse=True)


class FakeChainDirectory:
    def __init__(self, names: Optional[dict[str, str]] = None) -> None:
        self.names = names if names is not None else {"43114": "C-Chain", "8021": "Numi"}
        self.calls = 0

    def chain_names(self) -> dict[str, str]:
        self.calls += 1
        return dict(self.names)


class FakePaginator:
    """Paginator returning scripted results per hours-ago window.

    ``script`` maps (start_hours_ago, end_hours_ago) to a message list, a
    FetchRangeResult or an exception instance; unknown windows return no
    messages.
    """

    def __init__(self, script: Optional[dict] = None, default: Optional[Callable] = None):
        self.script = script or {}
        self.default = default
        self.calls: list[tuple] = []
        self.between_calls: list[tuple[int, int]] = []
        self.between_script: dict[tuple[int, int], Any] = {}

    async def fetch_range(self, start_hours_ago, end_hours_ago, *, anchor=None):
        self.calls.append((start_hours_ago, end_hours_ago, anchor))
        key = (start_hours_ago, end_hours_ago)
        if key in self.script:
            outcome = self.script[key]
        elif self.default is not None:
            outcome = self.default(start_hours_ago, end_hours_ago)
        else:
            outcome = []
        return self._resolve(outcome)

    async def fetch_between(self, start_time, end_time):
        self.between_calls.append((start_time, end_time))
        return self._resolve(self.between_script.get((start_time, end_time), []))

    @staticmethod
    def _resolve(outcome: Any) -> FetchRangeResult:
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FetchRangeResult):
            return outcome
        return FetchRangeResult(messages=list(outcome))


def build_message(
    timestamp: Any = None,
    source: Optional[str] = "43114",
    destination: Optional[str] = "8021",
    **extra: Any,
) -> TeleporterMessage:
    """Build an upstream message with a source transaction timestamp."""
    payload: dict[str, Any] = {
        "messageId": extra.pop("message_id", "0xabc"),
        "sourceEvmChainId": source,
        "destinationEvmChainId": destination,
        **extra,
    }
    if timestamp is not None:
        payload["sourceTransaction"] = {"txHash": "0x1", "timestamp": timestamp}
    return TeleporterMessage.model_validate(payload)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def job_state_repo() -> InMemoryJobStateRepository:
    return InMemoryJobStateRepository()


@pytest.fixture
def snapshot_repo() -> InMemorySnapshotRepository:
    return InMemorySnapshotRepository()


@pytest.fixture
def chain_directory() -> FakeChainDirectory:
    return FakeChainDirectory()


@pytest.fixture
def make_message() -> Callable[..., TeleporterMessage]:
    return build_message


@pytest.fixture
def make_paginator() -> Callable[..., FakePaginator]:
    return FakePaginator
