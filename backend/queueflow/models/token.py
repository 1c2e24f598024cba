import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from queueflow.db.types import GUID

from .base import Base


class TokenStatus(str, Enum):
    WAITING = "waiting"
    IN_SERVICE = "in_service"
    SERVED = "served"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class TokenPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


ACTIVE_STATUSES = (TokenStatus.WAITING, TokenStatus.IN_SERVICE)
TERMINAL_STATUSES = (TokenStatus.SERVED, TokenStatus.CANCELLED, TokenStatus.NO_SHOW)

_ACTIVE_POSITION_PREDICATE = text("status IN ('waiting', 'in_service')")


class Token(Base):
    """
    A customer's place in a queue.

    Active tokens (waiting, in_service) hold positions 1..N within their queue.
    Terminal tokens keep the position they had when they left the line.
    """

    __tablename__ = "tokens"

    __table_args__ = (
        Index("ix_tokens_queue_status", "queue_id", "status"),
        Index("ix_tokens_queue_status_position", "queue_id", "status", "position"),
        # Last line of defence for the contiguity invariant
        Index(
            "uq_tokens_queue_active_position",
            "queue_id",
            "position",
            unique=True,
            postgresql_where=_ACTIVE_POSITION_PREDICATE,
            sqlite_where=_ACTIVE_POSITION_PREDICATE,
        ),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    queue_id = Column(GUID, ForeignKey("queues.id"), nullable=False)

    token_number = Column(String(16), nullable=False)
    customer_name = Column(String(100), nullable=False)
    contact_email = Column(String(254), nullable=True)
    contact_phone = Column(String(20), nullable=True)

    priority = Column(
        SQLAlchemyEnum(TokenPriority, name="token_priority_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TokenPriority.NORMAL,
    )
    status = Column(
        SQLAlchemyEnum(TokenStatus, name="token_status_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TokenStatus.WAITING,
    )
    position = Column(Integer, nullable=False)

    notes = Column(Text, nullable=True)
    assigned_to = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    called_at = Column(DateTime, nullable=True)
    served_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Whole minutes, set once at the corresponding transition
    wait_time = Column(Integer, nullable=True)
    service_time = Column(Integer, nullable=True)

    queue = relationship("Queue", back_populates="tokens", lazy="noload")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
