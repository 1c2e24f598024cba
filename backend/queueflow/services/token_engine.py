"""
Token ordering and lifecycle engine.

Every mutation of a queue's line runs in one critical section:

    queue lock -> session -> SELECT queue FOR UPDATE -> change rows -> commit -> emit events

so the active tokens of a queue always hold positions 1..N, the queue's
occupancy counter always equals N, and events for a queue leave in the order
the mutations were committed.
"""
import logging
import math
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.core.distributed_lock import DistributedLockManager, queue_resource
from queueflow.db.errors import storage_errors
from queueflow.exceptions import ConflictError, InvalidArgumentError, NotFoundError
from queueflow.models.queue import Queue
from queueflow.models.token import Token, TokenPriority, TokenStatus
from queueflow.repositories.queue import QueueRepository
from queueflow.repositories.token import TokenRepository
from queueflow.schemas.token import CustomerInfo, estimate_join_wait_minutes, format_wait
from queueflow.services.email_notifier import EmailNotificationService, TokenNotificationPayload
from queueflow.services.event_notifier import (
    EventDispatcher,
    QueueEvent,
    QueueEventType,
    active_list_payload,
    token_payload,
)
from queueflow.services.queue_registry import apply_occupancy_delta, record_cancelled, record_served

logger = logging.getLogger(__name__)

TOKEN_NOT_FOUND = "Token not found"
QUEUE_NOT_FOUND = "Queue not found"
MAX_MESSAGE_LENGTH = 500

VALID_TRANSITIONS: Dict[TokenStatus, Set[TokenStatus]] = {
    TokenStatus.WAITING: {TokenStatus.IN_SERVICE, TokenStatus.CANCELLED, TokenStatus.NO_SHOW},
    TokenStatus.IN_SERVICE: {TokenStatus.SERVED, TokenStatus.CANCELLED, TokenStatus.NO_SHOW, TokenStatus.WAITING},
    TokenStatus.SERVED: set(),
    TokenStatus.CANCELLED: set(),
    TokenStatus.NO_SHOW: set(),
}


@dataclass(frozen=True)
class AuthorizationContext:
    """
    Who is asking. A manager may only touch their own queues; an anonymous
    customer may join any existing queue but must leave an email address.
    """
    owner_id: Optional[uuid.UUID] = None

    @classmethod
    def owner(cls, manager_id: uuid.UUID) -> "AuthorizationContext":
        return cls(owner_id=manager_id)

    @classmethod
    def public(cls) -> "AuthorizationContext":
        return cls()

    @property
    def is_public(self) -> bool:
        return self.owner_id is None


def display_code(queue_name: str, position: int) -> str:
    return f"{queue_name.strip()[:3].upper()}-{position:03d}"


def minutes_between(start: datetime, end: datetime) -> int:
    # Half a minute rounds up
    return math.floor((end - start).total_seconds() / 60 + 0.5)


def _append_note(existing: Optional[str], line: str) -> str:
    return f"{existing}\n{line}" if existing else line


class TokenOrderingEngine:
    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        lock_manager: DistributedLockManager,
        dispatcher: EventDispatcher,
        email_service: Optional[EmailNotificationService] = None,
        queue_repository_class=QueueRepository,
        token_repository_class=TokenRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
        minutes_per_token: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.dispatcher = dispatcher
        self.email_service = email_service
        self.queue_repository_class = queue_repository_class
        self.token_repository_class = token_repository_class
        self.clock = clock
        self.minutes_per_token = minutes_per_token

    @asynccontextmanager
    async def _critical_section(self, queue_id: uuid.UUID, operation: str):
        async with storage_errors(operation):
            async with self.lock_manager.lock(queue_resource(queue_id)):
                async with self.session_factory() as session:
                    yield session

    def _event(self, event_type: QueueEventType, queue: Queue, **payload) -> QueueEvent:
        return QueueEvent(event_type=event_type, queue_id=queue.id, occurred_at=self.clock(), payload=payload)

    def _occupancy_event(self, queue: Queue) -> QueueEvent:
        return self._event(
            QueueEventType.QUEUE_OCCUPANCY_CHANGED,
            queue,
            current_occupancy=queue.current_occupancy,
            max_capacity=queue.max_capacity,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _load_queue(self, session: AsyncSession, ctx: AuthorizationContext, queue_id: uuid.UUID,
                          for_update: bool = True) -> Queue:
        repo = self.queue_repository_class(session)
        if ctx.is_public:
            queue = await repo.get_by_id(queue_id, for_update=for_update)
        else:
            queue = await repo.get_owned(queue_id, ctx.owner_id, for_update=for_update)
        if queue is None:
            raise NotFoundError(QUEUE_NOT_FOUND)
        return queue

    async def _resolve_queue_id(self, owner_id: uuid.UUID, token_id: uuid.UUID) -> uuid.UUID:
        """Finds which queue to lock for a token-level operation. A token's queue never changes."""
        async with storage_errors("resolve_token"):
            async with self.session_factory() as session:
                token = await self.token_repository_class(session).get_by_id(token_id)
                if token is None:
                    raise NotFoundError(TOKEN_NOT_FOUND)
                queue = await self.queue_repository_class(session).get_owned(token.queue_id, owner_id)
                if queue is None:
                    raise NotFoundError(TOKEN_NOT_FOUND)
                return token.queue_id

    async def _load_locked(self, session: AsyncSession, owner_id: uuid.UUID, queue_id: uuid.UUID,
                           token_id: uuid.UUID) -> Tuple[Queue, Token]:
        queue = await self.queue_repository_class(session).get_owned(queue_id, owner_id, for_update=True)
        token = await self.token_repository_class(session).get_by_id(token_id)
        if queue is None or token is None or token.queue_id != queue.id:
            raise NotFoundError(TOKEN_NOT_FOUND)
        return queue, token

    # ═══════════════════════════════════════════════════════════════════════════
    # ENQUEUE
    # ═══════════════════════════════════════════════════════════════════════════

    async def enqueue(
        self,
        ctx: AuthorizationContext,
        queue_id: uuid.UUID,
        customer: CustomerInfo,
        priority: TokenPriority = TokenPriority.NORMAL,
        notes: Optional[str] = None,
    ) -> Token:
        """
        Appends a waiting token at position N+1.

        Raises:
            NotFoundError: queue missing, or not owned in the owner context.
            ConflictError: queue inactive or at capacity.
            InvalidArgumentError: public join without an email address.
        """
        if ctx.is_public and not customer.email:
            raise InvalidArgumentError("An email address is required to join a queue")

        async with self._critical_section(queue_id, "enqueue") as session:
            queue = await self._load_queue(session, ctx, queue_id)
            if not queue.is_active:
                raise ConflictError("Queue is not active")
            if not queue.has_capacity:
                raise ConflictError("Queue is at maximum capacity")

            token_repo = self.token_repository_class(session)
            position = await token_repo.get_max_active_position(queue.id) + 1
            token = Token(
                queue_id=queue.id,
                token_number=display_code(queue.name, position),
                customer_name=customer.name,
                contact_email=customer.email,
                contact_phone=customer.phone,
                priority=priority,
                status=TokenStatus.WAITING,
                position=position,
                notes=notes,
                created_at=self.clock(),
            )
            await token_repo.create(token)
            apply_occupancy_delta(queue, 1)
            await session.commit()

            self.dispatcher.emit([
                self._event(QueueEventType.TOKEN_ENQUEUED, queue, token=token_payload(token)),
                self._occupancy_event(queue),
            ])
            queue_name = queue.name

        logger.info(
            f"Enqueued token {token.token_number} ({token.id}) in queue {queue_id} at position {position}"
            f"{' via public join' if ctx.is_public else ''}"
        )

        if token.contact_email and self.email_service is not None:
            wait = estimate_join_wait_minutes(position, self.minutes_per_token)
            payload = TokenNotificationPayload(
                customer_email=token.contact_email,
                customer_name=token.customer_name,
                queue_name=queue_name,
                position=position,
                estimated_wait=format_wait(wait),
                token_number=token.token_number,
            )
            self.email_service.fire_and_forget(
                self.email_service.send_welcome_email(payload), f"welcome email for token {token.id}"
            )
        return token

    # ═══════════════════════════════════════════════════════════════════════════
    # REORDER
    # ═══════════════════════════════════════════════════════════════════════════

    async def reorder_to_waiting_position(
        self, owner_id: uuid.UUID, token_id: uuid.UUID, new_position: int
    ) -> Tuple[Token, List[Token]]:
        """
        Moves a waiting token to `new_position` within 1..N.

        Moving down (new > old) pulls the tokens in (old, new] up by one;
        moving up (new < old) pushes the tokens in [new, old) down by one.
        """
        queue_id = await self._resolve_queue_id(owner_id, token_id)
        async with self._critical_section(queue_id, "reorder") as session:
            queue, token = await self._load_locked(session, owner_id, queue_id, token_id)
            if token.status != TokenStatus.WAITING:
                raise ConflictError(f"Only waiting tokens can be reordered; token is {token.status.value}")

            token_repo = self.token_repository_class(session)
            active_count = await token_repo.count_active(queue.id)
            if not 1 <= new_position <= active_count:
                raise InvalidArgumentError(f"Position must be between 1 and {active_count}")

            old_position = token.position
            if new_position == old_position:
                return token, await token_repo.get_active_for_queue(queue.id)

            if new_position > old_position:
                await token_repo.apply_position_shift(
                    queue.id, old_position + 1, new_position, -1,
                    moved_token_id=token.id, moved_to=new_position,
                )
            else:
                await token_repo.apply_position_shift(
                    queue.id, new_position, old_position - 1, 1,
                    moved_token_id=token.id, moved_to=new_position,
                )

            active = await token_repo.get_active_for_queue(queue.id)
            await session.commit()

            self.dispatcher.emit([
                self._event(QueueEventType.TOKEN_POSITIONS_CHANGED, queue, tokens=active_list_payload(active)),
            ])

        logger.info(f"Moved token {token_id} in queue {queue_id} from {old_position} to {new_position}")
        return token, active

    # ═══════════════════════════════════════════════════════════════════════════
    # STATUS TRANSITIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _apply_transition(
        self,
        session: AsyncSession,
        queue: Queue,
        token: Token,
        target: TokenStatus,
        notes: Optional[str] = None,
    ) -> Tuple[List[QueueEvent], Optional[List[Token]]]:
        current = token.status
        if target not in VALID_TRANSITIONS[current]:
            raise ConflictError(f"Cannot change token status from {current.value} to {target.value}")

        now = self.clock()
        token_repo = self.token_repository_class(session)
        old_position = token.position
        if notes is not None:
            token.notes = notes

        if target == TokenStatus.IN_SERVICE:
            # A re-called token keeps its first call stamp
            if token.called_at is None:
                token.called_at = now
            if token.wait_time is None:
                token.wait_time = minutes_between(token.created_at, token.called_at)
            token.status = TokenStatus.IN_SERVICE
            await session.flush()
            return [self._event(QueueEventType.TOKEN_CALLED, queue, token=token_payload(token))], None

        if target == TokenStatus.WAITING:
            token.status = TokenStatus.WAITING
            await session.flush()
            last = await token_repo.get_max_active_position(queue.id)
            await token_repo.apply_position_shift(
                queue.id, old_position + 1, last, -1, moved_token_id=token.id, moved_to=last,
            )
            active = await token_repo.get_active_for_queue(queue.id)
            return [
                self._event(QueueEventType.TOKEN_POSITIONS_CHANGED, queue, tokens=active_list_payload(active)),
            ], active

        # Leaving the active set: served, cancelled or no_show
        if target == TokenStatus.SERVED:
            if token.served_at is None:
                token.served_at = now
            if token.completed_at is None:
                token.completed_at = now
            if token.service_time is None and token.called_at is not None:
                token.service_time = minutes_between(token.called_at, token.completed_at)
            record_served(queue)
            event_type = QueueEventType.TOKEN_COMPLETED
        else:
            if token.cancelled_at is None:
                token.cancelled_at = now
            record_cancelled(queue)
            event_type = QueueEventType.TOKEN_CANCELLED

        token.status = target
        apply_occupancy_delta(queue, -1)
        queue.updated_at = now
        # The status must reach the database before the shift query selects active rows
        await session.flush()

        last = await token_repo.get_max_active_position(queue.id)
        await token_repo.apply_position_shift(queue.id, old_position + 1, last, -1)
        active = await token_repo.get_active_for_queue(queue.id)

        return [
            self._event(event_type, queue, token=token_payload(token)),
            self._event(QueueEventType.TOKEN_POSITIONS_CHANGED, queue, tokens=active_list_payload(active)),
            self._occupancy_event(queue),
        ], active

    async def _transition(
        self, owner_id: uuid.UUID, token_id: uuid.UUID, target: TokenStatus, notes: Optional[str] = None
    ) -> Tuple[Token, List[Token]]:
        queue_id = await self._resolve_queue_id(owner_id, token_id)
        async with self._critical_section(queue_id, f"transition:{target.value}") as session:
            queue, token = await self._load_locked(session, owner_id, queue_id, token_id)
            previous = token.status
            events, active = await self._apply_transition(session, queue, token, target, notes)
            if active is None:
                active = await self.token_repository_class(session).get_active_for_queue(queue.id)
            await session.commit()
            self.dispatcher.emit(events)

        logger.info(f"Token {token_id} in queue {queue_id}: {previous.value} -> {target.value}")
        return token, active

    async def transition(
        self, owner_id: uuid.UUID, token_id: uuid.UUID, target: TokenStatus, notes: Optional[str] = None
    ) -> Token:
        token, _ = await self._transition(owner_id, token_id, target, notes)
        return token

    async def cancel(self, owner_id: uuid.UUID, token_id: uuid.UUID) -> Tuple[Token, List[Token]]:
        return await self._transition(owner_id, token_id, TokenStatus.CANCELLED)

    async def complete(self, owner_id: uuid.UUID, token_id: uuid.UUID, notes: Optional[str] = None) -> Token:
        return await self.transition(owner_id, token_id, TokenStatus.SERVED, notes)

    async def call_next(self, owner_id: uuid.UUID, queue_id: uuid.UUID) -> Token:
        """Moves the lowest-positioned waiting token into service."""
        async with self._critical_section(queue_id, "call_next") as session:
            queue = await self._load_queue(session, AuthorizationContext.owner(owner_id), queue_id)
            token = await self.token_repository_class(session).get_next_waiting(queue.id)
            if token is None:
                raise NotFoundError("No waiting tokens found")
            events, _ = await self._apply_transition(session, queue, token, TokenStatus.IN_SERVICE)
            await session.commit()
            self.dispatcher.emit(events)

        logger.info(f"Called token {token.token_number} ({token.id}) in queue {queue_id}")
        return token

    # ═══════════════════════════════════════════════════════════════════════════
    # ANNOTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def assign(self, owner_id: uuid.UUID, token_id: uuid.UUID, staff_label: str) -> Token:
        staff_label = (staff_label or "").strip()
        if not staff_label or len(staff_label) > 100:
            raise InvalidArgumentError("Assignee must be between 1 and 100 characters")

        queue_id = await self._resolve_queue_id(owner_id, token_id)
        async with self._critical_section(queue_id, "assign") as session:
            queue, token = await self._load_locked(session, owner_id, queue_id, token_id)
            now = self.clock()
            token.assigned_to = staff_label
            token.notes = _append_note(token.notes, f"[{now:%H:%M:%S}] Assigned to: {staff_label}")
            await session.commit()
            self.dispatcher.emit([
                self._event(QueueEventType.TOKEN_ASSIGNED, queue, token=token_payload(token)),
            ])

        logger.info(f"Assigned token {token_id} to {staff_label}")
        return token

    async def send_message_to_customer(
        self,
        owner_id: uuid.UUID,
        token_id: uuid.UUID,
        message: str,
        email: Optional[str] = None,
        manager_name: str = "The queue manager",
    ) -> Tuple[Token, str, bool]:
        """
        Records the message on the token and emails it to the customer.
        Returns (token, recipient, email_sent); a failed delivery does not fail the call.
        """
        message = (message or "").strip()
        if not message or len(message) > MAX_MESSAGE_LENGTH:
            raise InvalidArgumentError(f"Message must be between 1 and {MAX_MESSAGE_LENGTH} characters")

        queue_id = await self._resolve_queue_id(owner_id, token_id)
        async with self._critical_section(queue_id, "send_message") as session:
            queue, token = await self._load_locked(session, owner_id, queue_id, token_id)
            recipient = email or token.contact_email
            if not recipient:
                raise InvalidArgumentError("Customer email not available")

            now = self.clock()
            token.notes = _append_note(token.notes, f"[{now:%H:%M:%S}] Manager: {message}")
            await session.commit()
            self.dispatcher.emit([
                self._event(
                    QueueEventType.CUSTOMER_MESSAGED, queue,
                    token_id=str(token.id), message=message, sent_to=recipient,
                ),
            ])
            queue_name = queue.name

        email_sent = False
        if self.email_service is not None:
            email_sent = await self.email_service.send_queue_message(
                customer_email=recipient,
                customer_name=token.customer_name,
                manager_name=manager_name,
                message=message,
                queue_name=queue_name,
            )
        if not email_sent:
            logger.warning(f"Message for token {token_id} recorded but email to customer was not delivered")
        return token, recipient, email_sent

    # ═══════════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════════

    async def list_tokens(
        self, owner_id: uuid.UUID, queue_id: uuid.UUID, status: Optional[TokenStatus] = None
    ) -> List[Token]:
        async with self.session_factory() as session:
            queue = await self._load_queue(session, AuthorizationContext.owner(owner_id), queue_id, for_update=False)
            return await self.token_repository_class(session).get_for_queue(queue.id, status=status)

    async def get_token(self, owner_id: uuid.UUID, token_id: uuid.UUID) -> Token:
        async with self.session_factory() as session:
            token = await self.token_repository_class(session).get_by_id(token_id)
            if token is None:
                raise NotFoundError(TOKEN_NOT_FOUND)
            queue = await self.queue_repository_class(session).get_owned(token.queue_id, owner_id)
            if queue is None:
                raise NotFoundError(TOKEN_NOT_FOUND)
            return token

    async def list_active_tokens(self, queue_id: uuid.UUID, owner_id: Optional[uuid.UUID] = None) -> List[Token]:
        ctx = AuthorizationContext(owner_id=owner_id)
        async with self.session_factory() as session:
            queue = await self._load_queue(session, ctx, queue_id, for_update=False)
            return await self.token_repository_class(session).get_active_for_queue(queue.id)
