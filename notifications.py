from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from database import create_document, doc_to_dict, get_documents, now, store
from schemas import Notification


def notify(user_id: str, message: str, type: str) -> str:
    """Append an unread notification and return its id."""
    return create_document("notification", Notification(user_id=user_id, message=message, type=type))


def list_unread(user_id: str) -> list:
    docs = get_documents("notification", {"user_id": user_id, "is_read": False},
                         sort=[("created_at", -1), ("_id", -1)])
    return [doc_to_dict(d) for d in docs]


def mark_read(notification_id: str, user_id: Optional[str] = None) -> None:
    # Unknown or malformed ids are a no-op. With user_id, only that user's
    # notification can be marked.
    try:
        oid = ObjectId(notification_id)
    except (InvalidId, TypeError):
        return
    query = {"_id": oid, "is_read": False}
    if user_id is not None:
        query["user_id"] = user_id
    with store("mark notification read") as db:
        db["notification"].update_one(
            query,
            {"$set": {"is_read": True, "updated_at": now()}},
        )
