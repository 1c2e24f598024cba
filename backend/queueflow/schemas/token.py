from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator

from queueflow.core.config import settings
from queueflow.models.token import TokenPriority, TokenStatus

PHONE_PATTERN = r"^\+?[1-9]\d{0,15}$"


def normalize_phone(v):
    if isinstance(v, str):
        v = v.strip().replace(" ", "").replace("-", "")
        return v or None
    return v


class CustomerInfo(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone", mode="before")
    @classmethod
    def blank_phone_is_none(cls, v):
        return normalize_phone(v)


class TokenCreate(BaseModel):
    """Manager-authored token."""
    queue_id: UUID
    customer_name: str = Field(min_length=2, max_length=100)
    priority: TokenPriority = TokenPriority.NORMAL
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("customer_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("contact_phone", mode="before")
    @classmethod
    def blank_phone_is_none(cls, v):
        return normalize_phone(v)

    def customer(self) -> CustomerInfo:
        return CustomerInfo(name=self.customer_name, email=self.contact_email, phone=self.contact_phone)


class PublicTokenCreate(BaseModel):
    """Self-service join from the public page; an email address is mandatory."""
    queue_id: UUID
    customer_name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    priority: Literal["low", "medium", "high"] = "medium"

    @field_validator("customer_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("phone", mode="before")
    @classmethod
    def blank_phone_is_none(cls, v):
        return normalize_phone(v)

    def customer(self) -> CustomerInfo:
        return CustomerInfo(name=self.customer_name, email=self.email, phone=self.phone)

    def token_priority(self) -> TokenPriority:
        if self.priority == "high":
            return TokenPriority.HIGH
        return TokenPriority.NORMAL


class TokenRead(BaseModel):
    id: UUID
    queue_id: UUID
    token_number: str
    customer_name: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    priority: TokenPriority
    status: TokenStatus
    position: int
    notes: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: datetime
    called_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    wait_time: Optional[int] = None
    service_time: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def estimated_wait_minutes(self) -> int:
        if self.status != TokenStatus.WAITING:
            return 0
        return estimate_wait_minutes(self.position)


def estimate_wait_minutes(position: int, minutes_per_token: Optional[int] = None) -> int:
    """
    Flat heuristic: every token ahead costs a fixed number of minutes.
    Served tokens' service_time history is exposed separately for a better estimator.
    """
    if minutes_per_token is None:
        minutes_per_token = settings.ESTIMATED_MINUTES_PER_TOKEN
    return max(position - 1, 0) * minutes_per_token


def estimate_join_wait_minutes(position: int, minutes_per_token: Optional[int] = None) -> int:
    """Wait quoted to a customer at join time: one slot per position, their own included."""
    if minutes_per_token is None:
        minutes_per_token = settings.ESTIMATED_MINUTES_PER_TOKEN
    return position * minutes_per_token


def format_wait(minutes: int) -> str:
    if minutes == 1:
        return "1 minute"
    return f"{minutes} minutes"


class PublicTokenResponse(BaseModel):
    token_number: str
    position: int
    estimated_wait_minutes: int


class PositionUpdate(BaseModel):
    # Range checks happen in the engine against the live active count
    new_position: int


class StatusUpdate(BaseModel):
    status: TokenStatus
    notes: Optional[str] = Field(default=None, max_length=500)


class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class AssignRequest(BaseModel):
    assigned_to: str = Field(min_length=1, max_length=100)


class CustomerMessage(BaseModel):
    message: str = Field(min_length=1, max_length=500)
    customer_email: Optional[EmailStr] = None

    @field_validator("message", mode="before")
    @classmethod
    def strip_message(cls, v):
        return v.strip() if isinstance(v, str) else v


class ReorderResponse(BaseModel):
    token: TokenRead
    tokens: List[TokenRead]


class CancelResponse(BaseModel):
    token: TokenRead
    tokens: List[TokenRead]


class MessageResult(BaseModel):
    token: TokenRead
    sent_to: str
    message_content: str
    email_sent: bool
