from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from queueflow.models.queue import MAX_CAPACITY, MIN_CAPACITY
from queueflow.models.token import TokenStatus
from queueflow.schemas.token import TokenRead


class QueueCreate(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    max_capacity: Optional[int] = Field(default=None, ge=MIN_CAPACITY, le=MAX_CAPACITY)

    @field_validator("name", "description", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class QueueUpdate(BaseModel):
    """
    Partial update; only fields present in the request body are applied.
    An explicit null for max_capacity makes the queue unbounded.
    """
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    max_capacity: Optional[int] = Field(default=None, ge=MIN_CAPACITY, le=MAX_CAPACITY)
    is_active: Optional[bool] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("name", "is_active")
    @classmethod
    def not_null(cls, v, info):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v


class QueueRead(BaseModel):
    id: UUID
    manager_id: UUID
    name: str
    description: Optional[str] = None
    is_active: bool
    max_capacity: Optional[int] = None
    current_occupancy: int
    total_served: int
    total_cancelled: int
    efficiency: float
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PublicQueueRead(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    max_capacity: Optional[int] = None
    current_occupancy: int
    estimated_wait_minutes: int


class Pagination(BaseModel):
    current: int
    total: int
    count: int
    total_records: int


class QueueListResponse(BaseModel):
    queues: List[QueueRead]
    pagination: Pagination


class QueueDetail(BaseModel):
    queue: QueueRead
    tokens: List[TokenRead]


class StatusSummary(BaseModel):
    status: TokenStatus
    count: int
    avg_wait_time: Optional[float] = None
    avg_service_time: Optional[float] = None


class HourlyArrivals(BaseModel):
    hour: int
    count: int


class QueueStats(BaseModel):
    queue: QueueRead
    overall: List[StatusSummary]
    today: List[StatusSummary]
    hourly_distribution: List[HourlyArrivals]


class ServiceTimeHistory(BaseModel):
    queue_id: UUID
    service_times: List[int]
    average_service_time: Optional[float] = None
