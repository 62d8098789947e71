"""
Collection workflow: collectors pick up reported waste, prove it with a photo,
and earn points once the vision model agrees with the original report.

Status lifecycle on a report: pending -> in_progress -> completed -> verified.
verified is terminal and reachable from any earlier status.
"""
import logging
from typing import Callable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ReturnDocument

import config
import ledger
from database import create_document, get_documents, now, store, to_object_id, undo
from errors import NotFoundError, PersistenceError, TaskConflict, ValidationError
from notifications import notify
from reports import get_report
from schemas import CollectedWaste
from verification import CollectionCheck, verify_collection_image

logger = logging.getLogger(__name__)

STATUSES = ("pending", "in_progress", "completed", "verified")
TERMINAL = "verified"


class CollectionOutcome(BaseModel):
    verified: bool
    check: CollectionCheck
    points_awarded: int = 0
    task: Optional[dict] = None
    collected_waste_id: Optional[str] = None


def _as_task(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "location": doc["location"],
        "waste_type": doc["waste_type"],
        "amount": doc["amount"],
        "status": doc["status"],
        "date": doc["created_at"].date().isoformat(),
        "collector_id": doc.get("collector_id"),
    }


def list_open_tasks(limit: int = 20) -> list:
    """Every report as a task, whatever its status. Filtering is up to the caller."""
    if limit <= 0:
        raise ValidationError("limit must be positive")
    docs = get_documents("report", {}, limit=limit, sort=[("created_at", -1), ("_id", -1)])
    return [_as_task(d) for d in docs]


def claim(task_id: str, collector_id: str, new_status: str, expected_status: Optional[str] = None) -> Optional[dict]:
    """Move a task to new_status under collector_id.

    The update is conditional: the task must not be verified, must be free or
    already held by this collector, and must still be in expected_status when
    one is given. Returns the updated task, or None when no task matched
    (unknown id or a concurrent change). Only verify_collection may move a
    task to verified.
    """
    if new_status not in STATUSES:
        raise ValidationError(f"Unknown status: {new_status!r}")
    if new_status == TERMINAL:
        raise ValidationError("Tasks are verified by submitting a collection photo")
    return _transition(task_id, collector_id, new_status, expected_status)


def _transition(task_id: str, collector_id: str, new_status: str,
                expected_status: Optional[str] = None) -> Optional[dict]:
    try:
        oid = ObjectId(task_id)
    except (InvalidId, TypeError):
        return None

    query = {
        "_id": oid,
        "$or": [{"collector_id": None}, {"collector_id": collector_id}],
    }
    if expected_status:
        if expected_status == TERMINAL:
            return None
        query["status"] = expected_status
    else:
        query["status"] = {"$ne": TERMINAL}

    with store("task claim") as db:
        doc = db["report"].find_one_and_update(
            query,
            {"$set": {"status": new_status, "collector_id": collector_id, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
    if doc is None:
        logger.info(f"Claim of task {task_id} by {collector_id} matched nothing")
        return None
    logger.info(f"Task {task_id} -> {new_status} (collector {collector_id})")
    return _as_task(doc)


def _restore(task_id: str, status: str, collector_id: Optional[str]) -> None:
    with store("task restore") as db:
        db["report"].update_one(
            {"_id": to_object_id(task_id, "task id")},
            {"$set": {"status": status, "collector_id": collector_id, "updated_at": now()}},
        )


def _delete_collected(collected_id: str) -> None:
    with store("collected waste delete") as db:
        db["collectedwaste"].delete_one({"_id": ObjectId(collected_id)})


def verify_collection(task_id: str, collector_id: str, image: bytes, mime_type: str,
                      verifier: Optional[Callable[..., CollectionCheck]] = None) -> CollectionOutcome:
    """Check a collection photo against the report and settle the task.

    Below the confidence threshold (or on any mismatch) nothing is written.
    On acceptance the task is verified, one collected-waste record is stored
    and the collector is credited once; a failure partway through undoes the
    earlier writes.
    """
    report = get_report(task_id)
    if report is None:
        raise NotFoundError("Task not found")
    if report["status"] == TERMINAL:
        raise TaskConflict("Task is already verified")
    holder = report.get("collector_id")
    if holder and holder != collector_id:
        raise TaskConflict("Task is claimed by another collector")

    verifier = verifier or verify_collection_image
    check = verifier(image, mime_type, report["waste_type"], report["amount"])
    if not check.accepted:
        logger.info(f"Collection of task {task_id} rejected (confidence {check.confidence:.2f})")
        return CollectionOutcome(verified=False, check=check)

    task = _transition(task_id, collector_id, TERMINAL, expected_status=report["status"])
    if task is None:
        raise TaskConflict("Task changed while it was being verified")

    try:
        collected_id = create_document("collectedwaste", CollectedWaste(
            report_id=task_id, collector_id=collector_id, collection_date=now(),
        ))
    except PersistenceError:
        logger.error(f"Recording collection of task {task_id} failed, reopening the task")
        undo("restore task", _restore, task_id, report["status"], holder)
        raise

    points = config.COLLECT_POINTS
    try:
        txn = ledger.earn(collector_id, "earned_collect", points, "Points earned for collecting waste",
                          event_key=f"collect:{task_id}")
    except PersistenceError:
        logger.error(f"Crediting collection of task {task_id} failed, reopening the task")
        undo("delete collected waste", _delete_collected, collected_id)
        undo("restore task", _restore, task_id, report["status"], holder)
        raise

    try:
        notify(collector_id, f"You've earned {points} points for collecting waste", "reward")
    except PersistenceError:
        logger.error(f"Notifying about collection of task {task_id} failed, reopening the task")
        undo("void credit", ledger.void_transaction, txn)
        undo("delete collected waste", _delete_collected, collected_id)
        undo("restore task", _restore, task_id, report["status"], holder)
        raise

    logger.info(f"Task {task_id} verified, collector {collector_id} credited {points} points")
    return CollectionOutcome(verified=True, check=check, points_awarded=points, task=task,
                             collected_waste_id=collected_id)
