from fastapi import APIRouter, Depends, Query, Request, status
from typing import List, Optional
import uuid

from queueflow.api.dependencies.users import get_current_active_user
from queueflow.models.user import User
from queueflow.schemas.queue import (
    PublicQueueRead,
    QueueCreate,
    QueueDetail,
    QueueListResponse,
    QueueRead,
    QueueStats,
    QueueUpdate,
    ServiceTimeHistory,
)
from queueflow.schemas.token import TokenRead
from queueflow.services.queue_registry import QueueRegistryService

router = APIRouter()


def get_queue_registry(request: Request) -> QueueRegistryService:
    return request.app.state.queue_registry


@router.get("/public", response_model=List[PublicQueueRead])
async def list_public_queues(
    registry: QueueRegistryService = Depends(get_queue_registry),
):
    """
    Active queues anyone can join, with a rough wait estimate for a new arrival.
    """
    return await registry.list_public_queues()


@router.get("/", response_model=QueueListResponse)
async def list_queues(
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    queues, pagination = await registry.list_queues(current_user.id, is_active=is_active, page=page, limit=limit)
    return QueueListResponse(
        queues=[QueueRead.model_validate(q) for q in queues],
        pagination=pagination,
    )


@router.post("/", response_model=QueueRead, status_code=status.HTTP_201_CREATED)
async def create_queue(
    queue_in: QueueCreate,
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    queue = await registry.create_queue(current_user.id, queue_in)
    return QueueRead.model_validate(queue)


@router.get("/{queue_id}", response_model=QueueDetail)
async def get_queue(
    queue_id: uuid.UUID,
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    """
    The queue together with all of its tokens, terminal ones included.
    """
    queue, tokens = await registry.get_queue(queue_id, current_user.id)
    return QueueDetail(
        queue=QueueRead.model_validate(queue),
        tokens=[TokenRead.model_validate(t) for t in tokens],
    )


@router.put("/{queue_id}", response_model=QueueRead)
async def update_queue(
    queue_id: uuid.UUID,
    queue_in: QueueUpdate,
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    queue = await registry.update_queue(queue_id, current_user.id, queue_in)
    return QueueRead.model_validate(queue)


@router.delete("/{queue_id}", response_model=dict)
async def delete_queue(
    queue_id: uuid.UUID,
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    await registry.delete_queue(queue_id, current_user.id)
    return {"message": "Queue deleted successfully."}


@router.get("/{queue_id}/stats", response_model=QueueStats)
async def get_queue_stats(
    queue_id: uuid.UUID,
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    return await registry.get_queue_stats(queue_id, current_user.id)


@router.get("/{queue_id}/service-times", response_model=ServiceTimeHistory)
async def get_service_time_history(
    queue_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    registry: QueueRegistryService = Depends(get_queue_registry),
    current_user: User = Depends(get_current_active_user),
):
    return await registry.get_service_time_history(queue_id, current_user.id, limit=limit)
