import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from queueflow.db.types import GUID

from .base import Base


MIN_CAPACITY = 1
MAX_CAPACITY = 1000


class Queue(Base):
    """
    A manager-owned waiting line.

    `current_occupancy` always equals the number of the queue's tokens that are
    waiting or in service; only the token engine changes the counters.
    """

    __tablename__ = "queues"

    __table_args__ = (
        Index("ix_queues_manager_active", "manager_id", "is_active"),
        CheckConstraint("current_occupancy >= 0", name="ck_queues_occupancy_non_negative"),
        CheckConstraint("total_served >= 0", name="ck_queues_served_non_negative"),
        CheckConstraint("total_cancelled >= 0", name="ck_queues_cancelled_non_negative"),
        CheckConstraint(
            f"max_capacity IS NULL OR (max_capacity >= {MIN_CAPACITY} AND max_capacity <= {MAX_CAPACITY})",
            name="ck_queues_capacity_range",
        ),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    manager_id = Column(GUID, ForeignKey("users.id"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    max_capacity = Column(Integer, nullable=True)

    current_occupancy = Column(Integer, nullable=False, default=0)
    total_served = Column(Integer, nullable=False, default=0)
    total_cancelled = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    manager = relationship("User", back_populates="queues", lazy="noload")
    tokens = relationship("Token", back_populates="queue", lazy="noload")

    @property
    def efficiency(self) -> float:
        finished = (self.total_served or 0) + (self.total_cancelled or 0)
        if finished == 0:
            return 0.0
        return round(self.total_served / finished * 100, 2)

    @property
    def has_capacity(self) -> bool:
        return self.max_capacity is None or self.current_occupancy < self.max_capacity
