"""
Report workflow: a user reports waste, earns points, and gets told about it.

Submitting is a small saga. The report insert, the ledger credit and the
notification are separate writes; if a later one fails the earlier ones are
undone before the error is raised, so callers only ever see all three or none.
"""
import logging
import re
from typing import Optional, Union

from pydantic import ValidationError as SchemaError

import config
import ledger
from database import create_document, doc_to_dict, get_documents, store, to_object_id, undo
from errors import PersistenceError, ValidationError
from notifications import notify
from schemas import Report
from verification import ReportAnalysis

logger = logging.getLogger(__name__)

_AMOUNT = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(kg|kgs|kilograms?|g|grams?)?\s*$", re.IGNORECASE)


def normalize_amount(value: Union[int, float, str, None]) -> float:
    """Turn 5, "5", "5kg", "5 kg" or "500 g" into kilograms."""
    if value is None or isinstance(value, bool):
        raise ValidationError("amount is required")
    if isinstance(value, (int, float)):
        kilos = float(value)
    else:
        match = _AMOUNT.match(str(value))
        if not match:
            raise ValidationError(f"amount must be a weight in kg, got {value!r}")
        kilos = float(match.group(1))
        unit = (match.group(2) or "kg").lower()
        if unit.startswith("g"):
            kilos = kilos / 1000
    if kilos <= 0:
        raise ValidationError("amount must be greater than zero")
    return round(kilos, 3)


def _required(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def delete_report(report_id: str) -> None:
    with store("report delete") as db:
        db["report"].delete_one({"_id": to_object_id(report_id, "report id")})


def get_report(report_id: str) -> Optional[dict]:
    oid = to_object_id(report_id, "report id")
    with store("report lookup") as db:
        return doc_to_dict(db["report"].find_one({"_id": oid}))


def submit_report(user_id: str, location: str, waste_type: str, amount, image_url: Optional[str] = None,
                  ai_result: Union[ReportAnalysis, dict, None] = None) -> dict:
    to_object_id(user_id, "user id")
    if isinstance(ai_result, ReportAnalysis):
        ai_result = ai_result.model_dump(by_alias=True)
    try:
        report = Report(
            user_id=user_id,
            location=_required(location, "location"),
            waste_type=_required(waste_type, "waste type"),
            amount=normalize_amount(amount),
            image_url=image_url or None,
            verification_result=ai_result,
        )
    except SchemaError as e:
        raise ValidationError(str(e)) from e

    report_id = create_document("report", report)

    points = config.REPORT_POINTS
    try:
        txn = ledger.earn(user_id, "earned_report", points, "Points earned from reporting waste",
                          event_key=f"report:{report_id}")
    except PersistenceError:
        logger.error(f"Crediting report {report_id} failed, removing the report")
        undo("delete report", delete_report, report_id)
        raise

    try:
        notify(user_id, f"You've earned {points} points for reporting waste", "reward")
    except PersistenceError:
        logger.error(f"Notifying about report {report_id} failed, undoing the report")
        undo("void credit", ledger.void_transaction, txn)
        undo("delete report", delete_report, report_id)
        raise

    logger.info(f"Report {report_id} submitted by user {user_id}")
    return get_report(report_id)


def list_recent_reports(limit: int = 10) -> list:
    if limit <= 0:
        raise ValidationError("limit must be positive")
    docs = get_documents("report", {}, limit=limit, sort=[("created_at", -1), ("_id", -1)])
    return [doc_to_dict(d) for d in docs]


def impact_summary() -> dict:
    """Community totals for the landing page."""
    with store("impact summary") as db:
        reports_submitted = db["report"].count_documents({})
        collected = list(db["report"].aggregate([
            {"$match": {"status": "verified"}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]))
        earned = list(db["transaction"].aggregate([
            {"$match": {"type": {"$in": list(ledger.EARN_TYPES)}}},
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]))
    waste_kg = round(collected[0]["total"], 2) if collected else 0
    return {
        "waste_collected_kg": waste_kg,
        "reports_submitted": reports_submitted,
        "points_earned": earned[0]["total"] if earned else 0,
        "co2_offset_kg": round(waste_kg * config.CO2_PER_KG, 2),
    }
