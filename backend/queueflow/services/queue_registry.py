"""
Queue registry: owner-scoped CRUD and read-only statistics for queues.

Counter bookkeeping (`apply_occupancy_delta`, `record_served`,
`record_cancelled`) is exposed as module functions for the token engine,
which calls them on a queue row it already holds under lock.
"""
import logging
import math
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.core.distributed_lock import DistributedLockManager, queue_resource
from queueflow.db.errors import storage_errors
from queueflow.exceptions import ConflictError, NotFoundError
from queueflow.models.queue import Queue
from queueflow.models.token import Token
from queueflow.repositories.queue import QueueRepository
from queueflow.repositories.token import TokenRepository
from queueflow.schemas.queue import (
    HourlyArrivals,
    Pagination,
    PublicQueueRead,
    QueueCreate,
    QueueRead,
    QueueStats,
    QueueUpdate,
    ServiceTimeHistory,
    StatusSummary,
)
from queueflow.schemas.token import estimate_wait_minutes

logger = logging.getLogger(__name__)

QUEUE_NOT_FOUND = "Queue not found"


def apply_occupancy_delta(queue: Queue, delta: int) -> None:
    new_value = (queue.current_occupancy or 0) + delta
    if new_value < 0:
        raise ConflictError(
            f"Occupancy of queue {queue.id} would become negative ({queue.current_occupancy} {delta:+d})"
        )
    queue.current_occupancy = new_value


def record_served(queue: Queue) -> None:
    queue.total_served = (queue.total_served or 0) + 1


def record_cancelled(queue: Queue) -> None:
    queue.total_cancelled = (queue.total_cancelled or 0) + 1


class QueueRegistryService:
    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        lock_manager: DistributedLockManager,
        queue_repository_class=QueueRepository,
        token_repository_class=TokenRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.queue_repository_class = queue_repository_class
        self.token_repository_class = token_repository_class
        self.clock = clock

    async def _get_owned_or_404(self, session: AsyncSession, queue_id: uuid.UUID, manager_id: uuid.UUID,
                                for_update: bool = False) -> Queue:
        repo = self.queue_repository_class(session)
        queue = await repo.get_owned(queue_id, manager_id, for_update=for_update)
        if queue is None:
            raise NotFoundError(QUEUE_NOT_FOUND)
        return queue

    # ═══════════════════════════════════════════════════════════════════════════
    # MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def create_queue(self, manager_id: uuid.UUID, queue_in: QueueCreate) -> Queue:
        async with storage_errors("create_queue"):
            async with self.session_factory() as session:
                repo = self.queue_repository_class(session)
                queue = Queue(
                    manager_id=manager_id,
                    name=queue_in.name,
                    description=queue_in.description,
                    max_capacity=queue_in.max_capacity,
                    is_active=True,
                    current_occupancy=0,
                    total_served=0,
                    total_cancelled=0,
                )
                await repo.create(queue)
                await session.commit()

        logger.info(f"Created queue {queue.id} '{queue.name}' for manager {manager_id}")
        return queue

    async def update_queue(self, queue_id: uuid.UUID, manager_id: uuid.UUID, queue_in: QueueUpdate) -> Queue:
        """
        Applies only the fields set on the request. Lowering max_capacity below
        the current occupancy is accepted; it only blocks further joins.
        """
        changes = queue_in.model_dump(exclude_unset=True)
        async with storage_errors("update_queue"):
            async with self.lock_manager.lock(queue_resource(queue_id)):
                async with self.session_factory() as session:
                    queue = await self._get_owned_or_404(session, queue_id, manager_id, for_update=True)
                    for field, value in changes.items():
                        setattr(queue, field, value)
                    queue.updated_at = self.clock()
                    queue = await self.queue_repository_class(session).update(queue)
                    await session.commit()

        if "max_capacity" in changes and queue.max_capacity is not None \
                and queue.current_occupancy > queue.max_capacity:
            logger.warning(
                f"Queue {queue_id} capacity lowered to {queue.max_capacity} below occupancy {queue.current_occupancy}"
            )
        logger.info(f"Updated queue {queue_id}: {sorted(changes)}")
        return queue

    async def delete_queue(self, queue_id: uuid.UUID, manager_id: uuid.UUID) -> None:
        async with storage_errors("delete_queue"):
            async with self.lock_manager.lock(queue_resource(queue_id)):
                async with self.session_factory() as session:
                    queue = await self._get_owned_or_404(session, queue_id, manager_id, for_update=True)
                    token_repo = self.token_repository_class(session)
                    # Counted from the token rows, not the cached counter
                    active = await token_repo.count_active(queue.id)
                    if active > 0:
                        raise ConflictError("Cannot delete queue with active tokens")

                    removed = await token_repo.delete_for_queue(queue.id)
                    await self.queue_repository_class(session).delete(queue.id)
                    await session.commit()

        await self.lock_manager.cleanup(queue_resource(queue_id))
        logger.info(f"Deleted queue {queue_id} and {removed} historical tokens")

    # ═══════════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_queue(self, queue_id: uuid.UUID, manager_id: uuid.UUID) -> Tuple[Queue, List[Token]]:
        async with self.session_factory() as session:
            queue = await self._get_owned_or_404(session, queue_id, manager_id)
            tokens = await self.token_repository_class(session).get_for_queue(queue.id)
            return queue, tokens

    async def list_queues(
        self,
        manager_id: uuid.UUID,
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Queue], Pagination]:
        page = max(page, 1)
        limit = max(limit, 1)
        async with self.session_factory() as session:
            repo = self.queue_repository_class(session)
            queues = await repo.list_for_manager(
                manager_id, is_active=is_active, limit=limit, offset=(page - 1) * limit
            )
            total = await repo.count_for_manager(manager_id, is_active=is_active)

        pagination = Pagination(
            current=page,
            total=math.ceil(total / limit) if total else 0,
            count=len(queues),
            total_records=total,
        )
        return queues, pagination

    async def list_public_queues(self) -> List[PublicQueueRead]:
        async with self.session_factory() as session:
            queues = await self.queue_repository_class(session).list_active()

        # Everyone currently in line is ahead of a new arrival
        return [
            PublicQueueRead(
                id=q.id,
                name=q.name,
                description=q.description,
                max_capacity=q.max_capacity,
                current_occupancy=q.current_occupancy,
                estimated_wait_minutes=estimate_wait_minutes(q.current_occupancy + 1),
            )
            for q in queues
        ]

    async def get_queue_stats(self, queue_id: uuid.UUID, manager_id: uuid.UUID) -> QueueStats:
        today = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self.session_factory() as session:
            queue = await self._get_owned_or_404(session, queue_id, manager_id)
            token_repo = self.token_repository_class(session)
            overall = await token_repo.get_status_summary(queue.id)
            todays = await token_repo.get_status_summary(queue.id, since=today)
            hourly = await token_repo.get_hourly_arrivals(queue.id, since=today)

        return QueueStats(
            queue=QueueRead.model_validate(queue),
            overall=[StatusSummary(**row) for row in overall],
            today=[StatusSummary(**row) for row in todays],
            hourly_distribution=[HourlyArrivals(**row) for row in hourly],
        )

    async def get_service_time_history(
        self, queue_id: uuid.UUID, manager_id: uuid.UUID, limit: int = 50
    ) -> ServiceTimeHistory:
        async with self.session_factory() as session:
            queue = await self._get_owned_or_404(session, queue_id, manager_id)
            times = await self.token_repository_class(session).get_recent_service_times(queue.id, limit=limit)

        average = round(sum(times) / len(times), 2) if times else None
        return ServiceTimeHistory(queue_id=queue.id, service_times=times, average_service_time=average)
