"""MongoDB repository adapters.

Documents use the camelCase field names of the existing collections:
``teleportermessages`` (snapshots), ``teleporterupdatestates`` (job state)
and ``chains`` (chain directory, maintained elsewhere).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from l1beat.models.schemas import (
    DataType,
    JobError,
    JobState,
    JobStatus,
    MessageCountSnapshot,
)

logger = logging.getLogger(__name__)


def connect(url: str, db: str) -> tuple[MongoClient, Database]:
    """Create a tz-aware client and return it with the database handle."""
    client: MongoClient = MongoClient(url, tz_aware=True)
    return client, client[db]


def _value(data_type: Any) -> str:
    return data_type.value if isinstance(data_type, DataType) else str(data_type)


class MongoSnapshotRepository:
    """MessageCountSnapshot storage."""

    def __init__(self, collection: Collection) -> None:
        """Initialize repository and ensure indexes.

        Args:
            collection: The ``teleportermessages`` collection
        """
        self._coll = collection
        try:
            self._coll.create_index([("dataType", ASCENDING), ("updatedAt", DESCENDING)])
        except Exception:
            logger.warning("Snapshot index creation failed", exc_info=True)

    def save(self, snapshot: MessageCountSnapshot) -> None:
        """Insert a snapshot document."""
        self._coll.insert_one(snapshot.to_document())

    def latest(
        self, data_type: DataType, *, since: Optional[datetime] = None
    ) -> Optional[MessageCountSnapshot]:
        """Return the newest snapshot of a type, optionally bounded by age."""
        query: dict[str, Any] = {"dataType": _value(data_type)}
        if since is not None:
            query["updatedAt"] = {"$gte": since}
        doc = self._coll.find_one(query, sort=[("updatedAt", DESCENDING)])
        return self._to_model(doc) if doc else None

    def list_since(
        self, data_type: DataType, since: datetime
    ) -> list[MessageCountSnapshot]:
        """Return snapshots newer than ``since``, newest first."""
        cursor = self._coll.find(
            {"dataType": _value(data_type), "updatedAt": {"$gte": since}},
            sort=[("updatedAt", DESCENDING)],
        )
        snapshots = []
        for doc in cursor:
            model = self._to_model(doc)
            if model is not None:
                snapshots.append(model)
        return snapshots

    @staticmethod
    def _to_model(doc: dict[str, Any]) -> Optional[MessageCountSnapshot]:
        doc.pop("_id", None)
        try:
            return MessageCountSnapshot.model_validate(doc)
        except ValidationError:
            logger.warning(
                "Skipping invalid snapshot document",
                extra={"updated_at": str(doc.get("updatedAt"))},
                exc_info=True,
            )
            return None


class MongoJobStateRepository:
    """JobState storage keyed by ``updateType``.

    Conditional transitions use ``find_one_and_update`` with the condition in
    the filter, so two observers reconciling the same record cannot both win.
    """

    def __init__(self, collection: Collection) -> None:
        """Initialize repository and ensure indexes.

        Args:
            collection: The ``teleporterupdatestates`` collection
        """
        self._coll = collection
        try:
            self._coll.create_index([("updateType", ASCENDING)], unique=True)
        except Exception:
            logger.warning("Job state index creation failed", exc_info=True)

    def get(self, update_type: DataType) -> Optional[JobState]:
        """Load the record for a data type."""
        doc = self._coll.find_one({"updateType": _value(update_type)})
        return self._to_model(doc)

    def save(self, state: JobState) -> None:
        """Upsert the record for ``state.update_type``."""
        doc = state.to_document()
        self._coll.update_one(
            {"updateType": doc["updateType"]}, {"$set": doc}, upsert=True
        )

    def save_if_owner(self, state: JobState) -> bool:
        """Update only while ``run_id`` owns an in_progress record.

        Returns False if the run was superseded or its record was already
        moved to a terminal state by another observer.
        """
        doc = state.to_document()
        result = self._coll.update_one(
            {
                "updateType": doc["updateType"],
                "runId": doc["runId"],
                "state": JobStatus.IN_PROGRESS.value,
            },
            {"$set": doc},
        )
        return result.matched_count == 1

    def mark_failed_if_stale(
        self,
        update_type: DataType,
        *,
        cutoff: datetime,
        error: JobError,
        now: datetime,
    ) -> Optional[JobState]:
        """Fail an in_progress record whose lastUpdatedAt is before ``cutoff``."""
        return self._fail_where(
            update_type, {"lastUpdatedAt": {"$lt": cutoff}}, error=error, now=now
        )

    def mark_failed_if_started_before(
        self,
        update_type: DataType,
        *,
        started_before: datetime,
        error: JobError,
        now: datetime,
    ) -> Optional[JobState]:
        """Fail an in_progress record whose startedAt is before ``started_before``."""
        return self._fail_where(
            update_type, {"startedAt": {"$lt": started_before}}, error=error, now=now
        )

    def fail_all_in_progress(self, *, error: JobError, now: datetime) -> int:
        """Fail every in_progress record."""
        result = self._coll.update_many(
            {"state": JobStatus.IN_PROGRESS.value},
            {
                "$set": {
                    "state": JobStatus.FAILED.value,
                    "lastUpdatedAt": now,
                    "error": error.to_document(),
                }
            },
        )
        return result.modified_count

    def _fail_where(
        self,
        update_type: DataType,
        condition: dict[str, Any],
        *,
        error: JobError,
        now: datetime,
    ) -> Optional[JobState]:
        doc = self._coll.find_one_and_update(
            {
                "updateType": _value(update_type),
                "state": JobStatus.IN_PROGRESS.value,
                **condition,
            },
            {
                "$set": {
                    "state": JobStatus.FAILED.value,
                    "lastUpdatedAt": now,
                    "error": error.to_document(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(doc)

    @staticmethod
    def _to_model(doc: Optional[dict[str, Any]]) -> Optional[JobState]:
        if not doc:
            return None
        doc.pop("_id", None)
        return JobState.model_validate(doc)


class MongoChainDirectory:
    """Reads ``chainId -> chainName`` from the chains collection."""

    def __init__(self, collection: Collection) -> None:
        self._coll = collection

    def chain_names(self) -> dict[str, str]:
        """Return every known chain name keyed by EVM chain id string."""
        names: dict[str, str] = {}
        for doc in self._coll.find({}, {"chainId": 1, "chainName": 1}):
            chain_id = doc.get("chainId")
            name = doc.get("chainName")
            if chain_id is not None and name:
                names[str(chain_id)] = name
        return names
