from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.models.queue import Queue
from queueflow.repositories.base import BaseRepository


class QueueRepository(BaseRepository[Queue]):
    def __init__(self, session: AsyncSession):
        super().__init__(Queue, session)

    async def get_by_id(self, queue_id: UUID, for_update: bool = False) -> Queue | None:
        query = select(self.model).where(self.model.id == queue_id)
        if for_update:
            # Re-read under the row lock; never trust an identity-map copy here
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_owned(self, queue_id: UUID, manager_id: UUID, for_update: bool = False) -> Queue | None:
        query = select(self.model).where(
            self.model.id == queue_id,
            self.model.manager_id == manager_id,
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def list_for_manager(
        self,
        manager_id: UUID,
        is_active: Optional[bool] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Queue]:
        conditions = [self.model.manager_id == manager_id]
        if is_active is not None:
            conditions.append(self.model.is_active == is_active)

        result = await self.session.execute(
            select(self.model)
            .where(*conditions)
            .order_by(self.model.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all()

    async def count_for_manager(self, manager_id: UUID, is_active: Optional[bool] = None) -> int:
        conditions = [self.model.manager_id == manager_id]
        if is_active is not None:
            conditions.append(self.model.is_active == is_active)
        result = await self.session.execute(select(func.count(self.model.id)).where(*conditions))
        return result.scalar_one()

    async def list_active(self) -> List[Queue]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.is_active.is_(True))
            .order_by(self.model.created_at.desc())
        )
        return result.scalars().all()
