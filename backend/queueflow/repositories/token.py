from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.models.token import ACTIVE_STATUSES, Token, TokenStatus
from queueflow.repositories.base import BaseRepository


class TokenRepository(BaseRepository[Token]):
    def __init__(self, session: AsyncSession):
        super().__init__(Token, session)

    async def get_by_id(self, token_id: UUID) -> Token | None:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.id == token_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_active_for_queue(self, queue_id: UUID) -> List[Token]:
        """
        Active tokens ordered by position. Always re-read from the database,
        since bulk position shifts bypass the identity map.
        """
        result = await self.session.execute(
            select(self.model)
            .where(
                self.model.queue_id == queue_id,
                self.model.status.in_(ACTIVE_STATUSES),
            )
            .order_by(self.model.position.asc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def get_for_queue(self, queue_id: UUID, status: Optional[TokenStatus] = None) -> List[Token]:
        conditions = [self.model.queue_id == queue_id]
        if status is not None:
            conditions.append(self.model.status == status)
        result = await self.session.execute(
            select(self.model)
            .where(*conditions)
            .order_by(self.model.position.asc(), self.model.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def get_max_active_position(self, queue_id: UUID) -> int:
        result = await self.session.execute(
            select(func.max(self.model.position)).where(
                self.model.queue_id == queue_id,
                self.model.status.in_(ACTIVE_STATUSES),
            )
        )
        return result.scalar_one_or_none() or 0

    async def count_active(self, queue_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count(self.model.id)).where(
                self.model.queue_id == queue_id,
                self.model.status.in_(ACTIVE_STATUSES),
            )
        )
        return result.scalar_one()

    async def get_next_waiting(self, queue_id: UUID) -> Token | None:
        result = await self.session.execute(
            select(self.model)
            .where(
                self.model.queue_id == queue_id,
                self.model.status == TokenStatus.WAITING,
            )
            .order_by(self.model.position.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def apply_position_shift(
        self,
        queue_id: UUID,
        lower: int,
        upper: int,
        delta: int,
        moved_token_id: Optional[UUID] = None,
        moved_to: Optional[int] = None,
    ) -> None:
        """
        Shift every active token with position in [lower, upper] by `delta`,
        optionally placing `moved_token_id` at `moved_to`, as one batch.

        Rows are first staged at negative positions and then flipped back, so
        the partial unique index on (queue_id, position) never sees two active
        rows on the same slot while the batch is half applied.
        """
        shift_conditions = [
            self.model.queue_id == queue_id,
            self.model.status.in_(ACTIVE_STATUSES),
            self.model.position >= lower,
            self.model.position <= upper,
        ]
        if moved_token_id is not None:
            shift_conditions.append(self.model.id != moved_token_id)

        if lower <= upper:
            await self.session.execute(
                update(self.model)
                .where(*shift_conditions)
                .values(position=-(self.model.position + delta))
                .execution_options(synchronize_session=False)
            )

        if moved_token_id is not None:
            await self.session.execute(
                update(self.model)
                .where(self.model.id == moved_token_id)
                .values(position=-moved_to)
                .execution_options(synchronize_session=False)
            )

        await self.session.execute(
            update(self.model)
            .where(
                self.model.queue_id == queue_id,
                self.model.position < 0,
            )
            .values(position=-self.model.position)
            .execution_options(synchronize_session=False)
        )

    async def get_status_summary(self, queue_id: UUID, since: Optional[datetime] = None) -> List[dict]:
        conditions = [self.model.queue_id == queue_id]
        if since is not None:
            conditions.append(self.model.created_at >= since)

        result = await self.session.execute(
            select(
                self.model.status,
                func.count(self.model.id),
                func.avg(self.model.wait_time),
                func.avg(self.model.service_time),
            )
            .where(*conditions)
            .group_by(self.model.status)
        )
        return [
            {
                "status": row[0],
                "count": row[1],
                "avg_wait_time": float(row[2]) if row[2] is not None else None,
                "avg_service_time": float(row[3]) if row[3] is not None else None,
            }
            for row in result.all()
        ]

    async def get_hourly_arrivals(self, queue_id: UUID, since: datetime) -> List[dict]:
        hour = func.extract("hour", self.model.created_at)
        result = await self.session.execute(
            select(hour, func.count(self.model.id))
            .where(
                self.model.queue_id == queue_id,
                self.model.created_at >= since,
            )
            .group_by(hour)
            .order_by(hour)
        )
        return [{"hour": int(row[0]), "count": row[1]} for row in result.all()]

    async def get_recent_service_times(self, queue_id: UUID, limit: int = 50) -> List[int]:
        result = await self.session.execute(
            select(self.model.service_time)
            .where(
                self.model.queue_id == queue_id,
                self.model.status == TokenStatus.SERVED,
                self.model.service_time.is_not(None),
            )
            .order_by(self.model.completed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete_for_queue(self, queue_id: UUID) -> int:
        result = await self.session.execute(
            delete(self.model)
            .where(self.model.queue_id == queue_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
