"""
Identity gateway: maps the email the external wallet/identity provider
vouches for onto our own user records, and keeps explicit login sessions.
"""
import logging
import secrets
from typing import Optional

from pymongo import ReturnDocument

from database import doc_to_dict, now, store, to_object_id
from errors import ValidationError
from schemas import Session

logger = logging.getLogger(__name__)

DEFAULT_NAME = "Anonymous"


def ensure_user(email: str, name: Optional[str] = None) -> dict:
    """Return the user for this email, creating it on first sight.

    A single upsert keyed on the email, so repeated calls never create a
    duplicate even when they race.
    """
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("email is required")
    stamp = now()
    with store("ensure user") as db:
        user = db["user"].find_one_and_update(
            {"email": email},
            {"$setOnInsert": {
                "email": email,
                "name": (name or "").strip() or DEFAULT_NAME,
                "created_at": stamp,
                "updated_at": stamp,
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    return doc_to_dict(user)


def get_user(user_id: str) -> Optional[dict]:
    oid = to_object_id(user_id, "user id")
    with store("user lookup") as db:
        user = db["user"].find_one({"_id": oid})
    return doc_to_dict(user)


def login(email: str, name: Optional[str] = None) -> Session:
    """Open a session for an identity the provider has already authenticated."""
    user = ensure_user(email, name)
    session = Session(
        token=secrets.token_urlsafe(32),
        user_id=user["id"],
        email=user["email"],
        name=user["name"],
        created_at=now(),
    )
    with store("session create") as db:
        db["session"].insert_one(session.model_dump())
    logger.info(f"Session opened for user {user['id']}")
    return session


def resolve_session(token: Optional[str]) -> Optional[Session]:
    if not token:
        return None
    with store("session lookup") as db:
        doc = db["session"].find_one({"token": token})
    if not doc:
        return None
    doc.pop("_id", None)
    return Session(**doc)


def logout(token: str) -> bool:
    with store("session delete") as db:
        result = db["session"].delete_one({"token": token})
    return result.deleted_count > 0
