from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from pydantic import field_validator
from decimal import Decimal
from enum import Enum
import datetime
from typing import Optional


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


############
# USER MODEL
############


class UserBase(SQLModel):
    name: str
    email: str = Field(index=True, unique=True)
    phone: Optional[str] = None
    address: Optional[str] = None


class User(UserBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    hashed_password: str
    created_at: datetime.datetime = Field(default_factory=utcnow)


class UserCreate(UserBase):
    password: str


class UserUpdate(SQLModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None

    @field_validator("name", "email")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class UserDelete(SQLModel):
    password: str


class UserRead(UserBase):
    id: int


############
# TOOL MODEL
############


class ToolBase(SQLModel):
    name: str = Field(index=True, min_length=1, max_length=120)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, index=True, max_length=50)
    condition: Optional[str] = Field(default=None, max_length=50)
    price_per_day: Decimal = Field(default=0, ge=0, max_digits=10, decimal_places=2)


class Tool(ToolBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    # Cache of rental state, only written by rental transitions.
    available: bool = Field(default=True, index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ToolCreate(ToolBase):
    pass


class ToolUpdate(SQLModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=50)
    condition: Optional[str] = Field(default=None, max_length=50)
    price_per_day: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=10, decimal_places=2
    )

    @field_validator("name", "price_per_day")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class ToolRead(ToolBase):
    id: int
    owner_id: int
    available: bool
    created_at: datetime.datetime


##############
# RENTAL MODEL
##############


class RentalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    returned_pending = "returned_pending"
    completed = "completed"
    rejected = "rejected"


OPEN_STATUSES = (
    RentalStatus.pending,
    RentalStatus.approved,
    RentalStatus.returned_pending,
)


class RentalBase(SQLModel):
    tool_id: int
    start_date: datetime.date
    end_date: datetime.date


class RentalRequest(RentalBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    tool_id: int = Field(foreign_key="tool.id", index=True)
    renter_id: int = Field(foreign_key="user.id", index=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    status: RentalStatus = Field(default=RentalStatus.pending, index=True)
    returned_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utcnow)


class RentalCreate(RentalBase):
    pass


class RentalRead(RentalBase):
    id: int
    renter_id: int
    owner_id: int
    status: RentalStatus
    returned_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime


##############
# REVIEW MODEL
##############


class ReviewBase(SQLModel):
    rating: int
    comment: Optional[str] = None


class Review(ReviewBase, table=True):
    __table_args__ = (
        UniqueConstraint("tool_id", "reviewer_id", name="uq_review_tool_reviewer"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tool_id: int = Field(foreign_key="tool.id", index=True)
    reviewer_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ReviewCreate(ReviewBase):
    pass


class ReviewRead(ReviewBase):
    id: int
    tool_id: int
    reviewer_id: int
    created_at: datetime.datetime


class ReviewSummary(SQLModel):
    avg_rating: float
    review_count: int


class ReviewEligibility(SQLModel):
    eligible: bool


####################
# CONVERSATION MODEL
####################


class Conversation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    rental_id: int = Field(foreign_key="rentalrequest.id", unique=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    renter_id: int = Field(foreign_key="user.id", index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)


class ConversationRead(SQLModel):
    id: int
    rental_id: int
    owner_id: int
    renter_id: int
    created_at: datetime.datetime
