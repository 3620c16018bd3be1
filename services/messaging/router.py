"""
services/messaging/router.py
Booking chat endpoints. Threads hang off their booking; the unread counter
spans all of the caller's bookings.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.messaging import service
from shared.middleware.auth import get_current_actor
from shared.permissions import Actor
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    ChatMessageResponse,
    MarkReadResponse,
    MessageCreateRequest,
    UnreadCountResponse,
)

router = APIRouter(tags=["Messages"], responses=ERROR_RESPONSES)


@router.get("/bookings/{booking_id}/messages", response_model=List[ChatMessageResponse])
async def list_messages(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    messages = await service.list_messages(db, actor, booking_id)
    return [ChatMessageResponse.model_validate(m) for m in messages]


@router.post(
    "/bookings/{booking_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    booking_id: UUID,
    data: MessageCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    message = await service.send_message(
        db, actor, booking_id, content=data.content, attachment_url=data.attachment_url
    )
    await db.commit()
    return ChatMessageResponse.model_validate(message)


@router.post("/bookings/{booking_id}/messages/read", response_model=MarkReadResponse)
async def mark_read(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    updated = await service.mark_read(db, actor, booking_id)
    await db.commit()
    return MarkReadResponse(updated=updated)


@router.get("/messages/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCountResponse(unread=await service.unread_count(db, actor))
