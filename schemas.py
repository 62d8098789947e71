"""
Database Schemas for the community waste reporting app

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

- User -> "user"
- Report -> "report"
- RewardAccount -> "rewardaccount"
- Transaction -> "transaction"
- CollectedWaste -> "collectedwaste"
- Notification -> "notification"
- Reward -> "reward" (redeemable catalog)
- Session -> "session"

"""
from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any
from datetime import datetime

ReportStatus = Literal["pending", "in_progress", "completed", "verified"]
TransactionType = Literal["earned_report", "earned_collect", "redeemed"]


class User(BaseModel):
    """Identity anchor, keyed on the email the identity provider hands us"""
    email: str = Field(..., description="Unique external identifier")
    name: str = Field("Anonymous", description="Display name")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Report(BaseModel):
    """A waste sighting submitted by a user"""
    user_id: str = Field(..., description="Reporting user")
    location: str = Field(..., min_length=1, description="Free-text location")
    waste_type: str = Field(..., min_length=1, description="Waste type label, e.g. plastic")
    amount: float = Field(..., gt=0, description="Estimated quantity in kilograms")
    image_url: Optional[str] = Field(None, description="Link or data URL of the reported photo")
    verification_result: Optional[Dict[str, Any]] = Field(None, description="AI analysis captured at report time")
    status: ReportStatus = "pending"
    collector_id: Optional[str] = Field(None, description="Collector currently holding the task")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RewardAccount(BaseModel):
    """Per-user cached balance; only ledger.py writes it"""
    user_id: str
    points: int = Field(0, ge=0)
    is_available: bool = True
    name: str = "Points"
    description: Optional[str] = None
    collection_info: str = "Points earned from waste reporting and collection"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    """Immutable ledger entry; amount is always positive, the type carries the sign"""
    user_id: str
    type: TransactionType
    amount: int = Field(..., gt=0)
    description: str
    event_key: Optional[str] = Field(None, description="Deduplicates credits for one logical event")
    date: Optional[datetime] = None


class CollectedWaste(BaseModel):
    """A fulfilled, AI-confirmed collection"""
    report_id: str
    collector_id: str
    collection_date: datetime
    status: str = "collected"


class Notification(BaseModel):
    user_id: str
    message: str
    type: str = Field(..., description="Tag such as reward or collection")
    is_read: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Reward(BaseModel):
    """A catalog item users can redeem points for"""
    name: str
    cost: int = Field(..., gt=0, description="Price in points")
    description: Optional[str] = None
    collection_info: str = Field(..., description="How to claim the reward once redeemed")
    is_available: bool = True


class Session(BaseModel):
    """A logged-in user; created at login, deleted at logout"""
    token: str
    user_id: str
    email: str
    name: str
    created_at: Optional[datetime] = None
