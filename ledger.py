"""
Reward ledger: points earned and spent by each user.

The transaction collection is the source of truth: a user's balance is
max(0, sum(earned) - sum(redeemed)) over their FULL history. The points field
on rewardaccount is only a cache, and this module is the only code that
touches it: every append to the log adjusts the cache in the same call, and
reconcile() rebuilds it from the log.
"""
import logging
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, doc_to_dict, get_documents, now, store
from errors import InsufficientBalance, PersistenceError, ValidationError
from schemas import Reward, Transaction

logger = logging.getLogger(__name__)

EARN_TYPES = ("earned_report", "earned_collect")
REDEEMED = "redeemed"

POINTS_ENTRY_ID = "points"

SAMPLE_REWARDS = [
    Reward(name="Reusable Shopping Bag", cost=50,
           description="A sturdy bag made from recycled plastic",
           collection_info="Show the redemption in the app at any partner store"),
    Reward(name="Local Cafe Voucher", cost=150,
           description="One free hot drink at a participating cafe",
           collection_info="Voucher code is emailed within 24 hours"),
    Reward(name="Tree Planted In Your Name", cost=200,
           description="We plant a native tree and send you its location",
           collection_info="Certificate is emailed within a week"),
]


def _check_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Point amount must be a positive integer, got {amount!r}")


# ---------------------------------------------------------------------------
# Log and cache primitives
# ---------------------------------------------------------------------------

def _log_total(user_id: str) -> int:
    """Earned minus redeemed over the whole log, unclamped."""
    pipeline = [
        {"$match": {"user_id": user_id}},
        {"$group": {"_id": "$type", "total": {"$sum": "$amount"}}},
    ]
    with store("balance computation") as db:
        totals = {row["_id"]: row["total"] for row in db["transaction"].aggregate(pipeline)}
    earned = sum(totals.get(kind, 0) for kind in EARN_TYPES)
    return earned - totals.get(REDEEMED, 0)


def balance(user_id: str) -> int:
    """Current balance derived from the user's whole transaction log."""
    return max(0, _log_total(user_id))


def _append(user_id: str, kind: str, amount: int, description: str,
            event_key: Optional[str] = None) -> Optional[dict]:
    """Write one ledger entry. Returns None if event_key was already used."""
    txn = Transaction(user_id=user_id, type=kind, amount=amount, description=description,
                      event_key=event_key, date=now())
    doc = txn.model_dump(exclude_none=True)
    with store("transaction append") as db:
        try:
            result = db["transaction"].insert_one(doc)
        except DuplicateKeyError:
            return None
    doc["_id"] = result.inserted_id
    return doc_to_dict(doc)


def _find_event(event_key: str) -> Optional[dict]:
    with store("transaction lookup") as db:
        return doc_to_dict(db["transaction"].find_one({"event_key": event_key}))


def _adjust_points(user_id: str, delta: int) -> Optional[dict]:
    """Move the cached balance by delta.

    Increments create the account on first use. Decrements only match an
    account holding at least -delta points, so the cache never goes negative;
    None means nothing matched.
    """
    query = {"user_id": user_id}
    if delta < 0:
        query["points"] = {"$gte": -delta}
    stamp = now()
    update = {
        "$inc": {"points": delta},
        "$set": {"updated_at": stamp},
        "$setOnInsert": {
            "user_id": user_id,
            "is_available": True,
            "name": "Points",
            "collection_info": "Points earned from waste reporting and collection",
            "created_at": stamp,
        },
    }
    with store("reward account update") as db:
        account = db["rewardaccount"].find_one_and_update(
            query, update, upsert=delta > 0, return_document=ReturnDocument.AFTER,
        )
    return doc_to_dict(account)


def reconcile(user_id: str) -> int:
    """Rewrite the cached points from the transaction log and return them."""
    points = balance(user_id)
    stamp = now()
    with store("reward account reconcile") as db:
        db["rewardaccount"].update_one(
            {"user_id": user_id},
            {"$set": {"points": points, "updated_at": stamp},
             "$setOnInsert": {"user_id": user_id, "is_available": True, "name": "Points",
                              "collection_info": "Points earned from waste reporting and collection",
                              "created_at": stamp}},
            upsert=True,
        )
    return points


def void_transaction(txn: dict) -> None:
    """Undo an entry written by a workflow step that later failed.

    Only for compensating an operation that is still in flight; settled
    history is never edited.
    """
    with store("transaction void") as db:
        db["transaction"].delete_one({"_id": ObjectId(txn["id"])})
    delta = -txn["amount"] if txn["type"] in EARN_TYPES else txn["amount"]
    if _adjust_points(txn["user_id"], delta) is None:
        reconcile(txn["user_id"])
    logger.warning(f"Voided {txn['type']} transaction {txn['id']} for user {txn['user_id']}")


# ---------------------------------------------------------------------------
# Earn / redeem
# ---------------------------------------------------------------------------

def earn(user_id: str, kind: str, amount: int, description: str, event_key: Optional[str] = None) -> dict:
    """Credit points: append the transaction, then bump the cached balance.

    With an event_key, a second call for the same event returns the first
    transaction and credits nothing.
    """
    if kind not in EARN_TYPES:
        raise ValidationError(f"Unknown earn type: {kind!r}")
    _check_amount(amount)

    if event_key:
        existing = _find_event(event_key)
        if existing:
            logger.info(f"Duplicate credit for event {event_key} ignored")
            return existing

    txn = _append(user_id, kind, amount, description, event_key)
    if txn is None:
        logger.info(f"Duplicate credit for event {event_key} ignored")
        return _find_event(event_key)

    try:
        _adjust_points(user_id, amount)
    except PersistenceError:
        logger.error(f"Could not update balance for user {user_id}, rolling back credit")
        with store("transaction rollback") as db:
            db["transaction"].delete_one({"_id": ObjectId(txn["id"])})
        raise
    logger.info(f"User {user_id} earned {amount} points ({kind})")
    return txn


def _redeem(user_id: str, cost: int, description: str) -> dict:
    """Spend points: write the entry first, then check the log still adds up.

    A redemption that would take the log below zero removes its own entry and
    is rejected, so two overlapping redemptions can never both spend the same
    points. The cache is only touched once the entry has stood.
    """
    txn = _append(user_id, REDEEMED, cost, description)
    if _log_total(user_id) < 0:
        with store("transaction rollback") as db:
            db["transaction"].delete_one({"_id": ObjectId(txn["id"])})
        raise InsufficientBalance("Insufficient balance to redeem this reward")
    try:
        if _adjust_points(user_id, -cost) is None:
            # The cache lagged the log; rebuild it from the entry we just wrote.
            reconcile(user_id)
    except PersistenceError:
        logger.error(f"Could not update balance for user {user_id}, rolling back redemption")
        with store("transaction rollback") as db:
            db["transaction"].delete_one({"_id": ObjectId(txn["id"])})
        raise
    logger.info(f"User {user_id} redeemed {cost} points")
    return txn


def redeem_all(user_id: str) -> dict:
    """Spend the whole balance in one redemption."""
    current = balance(user_id)
    if current <= 0:
        raise InsufficientBalance("No points available to redeem")
    return _redeem(user_id, current, "Redeemed all points")


def redeem_specific(user_id: str, reward_id: str, cost: int) -> dict:
    _check_amount(cost)
    if balance(user_id) < cost:
        raise InsufficientBalance("Insufficient balance to redeem this reward")
    reward = get_reward(reward_id)
    label = reward["name"] if reward else f"reward {reward_id}"
    return _redeem(user_id, cost, f"Redeemed {label}")


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def list_transactions(user_id: str, limit: int = 10) -> list:
    """Most recent entries for display. Balances never come from this window."""
    docs = get_documents("transaction", {"user_id": user_id}, limit=limit,
                         sort=[("date", -1), ("_id", -1)])
    return [doc_to_dict(d) for d in docs]


def get_reward(reward_id: str) -> Optional[dict]:
    try:
        oid = ObjectId(reward_id)
    except (InvalidId, TypeError):
        return None
    with store("reward lookup") as db:
        return doc_to_dict(db["reward"].find_one({"_id": oid}))


def list_available_rewards(user_id: str) -> list:
    """Catalog rewards on offer, then the user's own points as a zero-cost entry."""
    catalog = get_documents("reward", {"is_available": True}, sort=[("cost", 1)])
    entries = [
        {
            "id": str(r["_id"]),
            "name": r["name"],
            "cost": r["cost"],
            "description": r.get("description"),
            "collection_info": r.get("collection_info"),
        }
        for r in catalog
    ]
    points = balance(user_id)
    entries.append({
        "id": POINTS_ENTRY_ID,
        "name": "Your Points",
        "cost": 0,
        "points": points,
        "description": f"Redeem all {points} of your earned points",
        "collection_info": "Points earned from reporting and collecting waste",
    })
    return entries


def leaderboard(limit: int = 10) -> list:
    accounts = get_documents("rewardaccount", {}, limit=limit, sort=[("points", -1), ("_id", 1)])
    ids = []
    for account in accounts:
        try:
            ids.append(ObjectId(account["user_id"]))
        except (InvalidId, TypeError):
            continue
    names = {str(u["_id"]): u.get("name") for u in get_documents("user", {"_id": {"$in": ids}})}
    return [
        {"user_id": a["user_id"], "name": names.get(a["user_id"], "Anonymous"), "points": a.get("points", 0)}
        for a in accounts
    ]


def seed_catalog() -> int:
    """Insert the sample rewards when the catalog is empty. Returns how many were added."""
    if get_documents("reward", {}, limit=1):
        return 0
    for reward in SAMPLE_REWARDS:
        create_document("reward", reward)
    return len(SAMPLE_REWARDS)
