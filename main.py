import base64
import binascii
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import collection
import config
import database
import identity
import ledger
import notifications
import reports
import verification
from errors import NotFoundError, PersistenceError, TaskConflict, ValidationError, WasteLedgerError
from schemas import CollectedWaste, Notification, Report, Reward, RewardAccount, Session, Transaction, User

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("wastewise")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes()
        except PersistenceError as e:
            logger.warning(f"Could not create indexes: {e}")
    else:
        logger.warning("DATABASE_URL not set, running without a database")
    yield


app = FastAPI(title="WasteWise API", description="Report waste, collect it, earn points", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WasteLedgerError)
async def ledger_error_handler(request, exc: WasteLedgerError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.__class__.__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def current_session(authorization: Optional[str] = Header(None)) -> Session:
    """Resolve the bearer token from the Authorization header into a session."""
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    session = identity.resolve_session(token)
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session


def decode_image(data: str) -> bytes:
    # Accept both raw base64 and data URLs.
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("image must be base64 encoded")


class LoginRequest(BaseModel):
    email: str
    name: Optional[str] = None


class ImageRequest(BaseModel):
    image: str
    mime_type: str = "image/jpeg"


class CreateReportRequest(BaseModel):
    location: Optional[str] = None
    waste_type: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    image_url: Optional[str] = None
    verification_result: Optional[Dict[str, Any]] = None


class ClaimRequest(BaseModel):
    status: str
    expected_status: Optional[str] = None


@app.get("/")
def read_root():
    return {"message": "WasteWise backend is running"}


@app.get("/schema")
def get_schema():
    # Expose defined schemas for the viewer
    return {
        "user": User.model_json_schema(),
        "report": Report.model_json_schema(),
        "rewardaccount": RewardAccount.model_json_schema(),
        "transaction": Transaction.model_json_schema(),
        "collectedwaste": CollectedWaste.model_json_schema(),
        "notification": Notification.model_json_schema(),
        "reward": Reward.model_json_schema(),
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "ai_verification": "✅ Configured" if config.AI_API_KEY else "❌ Not Configured",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        with database.store("list collections") as db:
            names = db.list_collection_names()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        response["collections"] = names[:10]
    except PersistenceError as e:
        response["database"] = f"❌ Error: {e.message[:100]}"
    return response


# -----------------------------
# Identity
# -----------------------------

@app.post("/auth/login")
def login(body: LoginRequest):
    session = identity.login(body.email, body.name)
    return session.model_dump(exclude={"created_at"})


@app.post("/auth/logout")
def logout(session: Session = Depends(current_session)):
    return {"logged_out": identity.logout(session.token)}


@app.get("/users/me")
def me(session: Session = Depends(current_session)):
    user = identity.get_user(session.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "created_at": user.get("created_at"),
        "balance": ledger.balance(session.user_id),
    }


# -----------------------------
# Reports
# -----------------------------

@app.post("/verify/report")
def verify_report_image(body: ImageRequest, session: Session = Depends(current_session)):
    analysis = verification.analyze_report_image(decode_image(body.image), body.mime_type)
    return analysis.model_dump(by_alias=True)


@app.post("/reports", response_model=dict)
def create_report(body: CreateReportRequest, session: Session = Depends(current_session)):
    return reports.submit_report(
        session.user_id,
        body.location,
        body.waste_type,
        body.amount,
        image_url=body.image_url,
        ai_result=body.verification_result,
    )


@app.get("/reports", response_model=List[dict])
def list_reports(limit: int = Query(10, gt=0, le=100)):
    return reports.list_recent_reports(limit)


@app.get("/impact")
def impact():
    return reports.impact_summary()


# -----------------------------
# Collection
# -----------------------------

@app.get("/tasks", response_model=List[dict])
def list_tasks(limit: int = Query(20, gt=0, le=100)):
    return collection.list_open_tasks(limit)


@app.post("/tasks/{task_id}/claim")
def claim_task(task_id: str, body: ClaimRequest, session: Session = Depends(current_session)):
    task = collection.claim(task_id, session.user_id, body.status, body.expected_status)
    if task is None:
        try:
            exists = reports.get_report(task_id) is not None
        except ValidationError:
            exists = False
        if not exists:
            raise NotFoundError("Task not found")
        raise TaskConflict("Task is held by another collector or has already moved on")
    return task


@app.post("/tasks/{task_id}/verify")
def verify_task(task_id: str, body: ImageRequest, session: Session = Depends(current_session)):
    outcome = collection.verify_collection(task_id, session.user_id, decode_image(body.image), body.mime_type)
    return outcome.model_dump(by_alias=True)


# -----------------------------
# Rewards
# -----------------------------

@app.get("/rewards", response_model=List[dict])
def available_rewards(session: Session = Depends(current_session)):
    return ledger.list_available_rewards(session.user_id)


@app.get("/rewards/balance")
def reward_balance(session: Session = Depends(current_session)):
    return {"balance": ledger.balance(session.user_id)}


@app.get("/rewards/transactions", response_model=List[dict])
def reward_transactions(limit: int = Query(10, gt=0, le=100), session: Session = Depends(current_session)):
    return ledger.list_transactions(session.user_id, limit)


@app.post("/rewards/redeem-all")
def redeem_all(session: Session = Depends(current_session)):
    txn = ledger.redeem_all(session.user_id)
    return {"transaction": txn, "balance": ledger.balance(session.user_id)}


@app.post("/rewards/{reward_id}/redeem")
def redeem_reward(reward_id: str, session: Session = Depends(current_session)):
    reward = ledger.get_reward(reward_id)
    if not reward or not reward.get("is_available", True):
        raise NotFoundError("Reward not found")
    txn = ledger.redeem_specific(session.user_id, reward_id, reward["cost"])
    return {"transaction": txn, "balance": ledger.balance(session.user_id)}


@app.get("/leaderboard", response_model=List[dict])
def leaderboard(limit: int = Query(10, gt=0, le=100)):
    return ledger.leaderboard(limit)


@app.post("/api/seed")
def seed_data():
    """Seed the reward catalog if it is empty."""
    return {"status": "ok", "rewards_added": ledger.seed_catalog()}


# -----------------------------
# Notifications
# -----------------------------

@app.get("/notifications", response_model=List[dict])
def unread_notifications(session: Session = Depends(current_session)):
    return notifications.list_unread(session.user_id)


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, session: Session = Depends(current_session)):
    notifications.mark_read(notification_id, user_id=session.user_id)
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
