from fastapi import APIRouter, Depends, Request, status
from typing import List, Optional
import uuid

from queueflow.api.dependencies.users import get_current_active_user
from queueflow.models.token import TokenStatus
from queueflow.models.user import User
from queueflow.rate_limiter import limiter
from queueflow.schemas.token import (
    AssignRequest,
    CancelResponse,
    CompleteRequest,
    CustomerMessage,
    MessageResult,
    PositionUpdate,
    PublicTokenCreate,
    PublicTokenResponse,
    ReorderResponse,
    StatusUpdate,
    TokenCreate,
    TokenRead,
    estimate_join_wait_minutes,
)
from queueflow.services.token_engine import AuthorizationContext, TokenOrderingEngine

router = APIRouter()


def get_token_engine(request: Request) -> TokenOrderingEngine:
    return request.app.state.token_engine


@router.post("/public", response_model=PublicTokenResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def join_queue(
    request: Request,
    token_in: PublicTokenCreate,
    engine: TokenOrderingEngine = Depends(get_token_engine),
):
    """
    Anonymous self-service join. The customer gets a welcome email with their token number.
    """
    token = await engine.enqueue(
        AuthorizationContext.public(),
        token_in.queue_id,
        token_in.customer(),
        priority=token_in.token_priority(),
    )
    return PublicTokenResponse(
        token_number=token.token_number,
        position=token.position,
        estimated_wait_minutes=estimate_join_wait_minutes(token.position, engine.minutes_per_token),
    )


@router.get("/queue/{queue_id}", response_model=List[TokenRead])
async def list_tokens(
    queue_id: uuid.UUID,
    status: Optional[TokenStatus] = None,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    tokens = await engine.list_tokens(current_user.id, queue_id, status=status)
    return [TokenRead.model_validate(t) for t in tokens]


@router.get("/queue/{queue_id}/active", response_model=List[TokenRead])
async def list_active_tokens(
    queue_id: uuid.UUID,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    """
    The current line in position order: waiting and in-service tokens only.
    """
    tokens = await engine.list_active_tokens(queue_id, owner_id=current_user.id)
    return [TokenRead.model_validate(t) for t in tokens]


@router.put("/queue/{queue_id}/call-next", response_model=TokenRead)
async def call_next(
    queue_id: uuid.UUID,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.call_next(current_user.id, queue_id)
    return TokenRead.model_validate(token)


@router.post("/", response_model=TokenRead, status_code=status.HTTP_201_CREATED)
async def create_token(
    token_in: TokenCreate,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.enqueue(
        AuthorizationContext.owner(current_user.id),
        token_in.queue_id,
        token_in.customer(),
        priority=token_in.priority,
        notes=token_in.notes,
    )
    return TokenRead.model_validate(token)


@router.get("/{token_id}", response_model=TokenRead)
async def get_token(
    token_id: uuid.UUID,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.get_token(current_user.id, token_id)
    return TokenRead.model_validate(token)


async def _reorder(engine: TokenOrderingEngine, owner_id: uuid.UUID, token_id: uuid.UUID,
                   update: PositionUpdate) -> ReorderResponse:
    token, active = await engine.reorder_to_waiting_position(owner_id, token_id, update.new_position)
    return ReorderResponse(
        token=TokenRead.model_validate(token),
        tokens=[TokenRead.model_validate(t) for t in active],
    )


@router.put("/{token_id}/position", response_model=ReorderResponse)
async def update_token_position(
    token_id: uuid.UUID,
    update: PositionUpdate,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    return await _reorder(engine, current_user.id, token_id, update)


@router.patch("/{token_id}/reorder", response_model=ReorderResponse)
async def reorder_token(
    token_id: uuid.UUID,
    update: PositionUpdate,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    return await _reorder(engine, current_user.id, token_id, update)


@router.patch("/{token_id}", response_model=TokenRead)
async def update_token_status(
    token_id: uuid.UUID,
    update: StatusUpdate,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.transition(current_user.id, token_id, update.status, notes=update.notes)
    return TokenRead.model_validate(token)


@router.patch("/{token_id}/assign", response_model=TokenRead)
async def assign_token(
    token_id: uuid.UUID,
    assignment: AssignRequest,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.assign(current_user.id, token_id, assignment.assigned_to)
    return TokenRead.model_validate(token)


@router.put("/{token_id}/complete", response_model=TokenRead)
async def complete_token(
    token_id: uuid.UUID,
    body: Optional[CompleteRequest] = None,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token = await engine.complete(current_user.id, token_id, notes=body.notes if body else None)
    return TokenRead.model_validate(token)


@router.delete("/{token_id}", response_model=CancelResponse)
async def cancel_token(
    token_id: uuid.UUID,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token, active = await engine.cancel(current_user.id, token_id)
    return CancelResponse(
        token=TokenRead.model_validate(token),
        tokens=[TokenRead.model_validate(t) for t in active],
    )


@router.post("/{token_id}/message", response_model=MessageResult)
async def message_customer(
    token_id: uuid.UUID,
    body: CustomerMessage,
    engine: TokenOrderingEngine = Depends(get_token_engine),
    current_user: User = Depends(get_current_active_user),
):
    token, recipient, email_sent = await engine.send_message_to_customer(
        current_user.id,
        token_id,
        body.message,
        email=body.customer_email,
        manager_name=current_user.full_name or current_user.username,
    )
    return MessageResult(
        token=TokenRead.model_validate(token),
        sent_to=recipient,
        message_content=body.message,
        email_sent=email_sent,
    )
