"""
Chat routes with streaming support.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from ..models.chat import ChatInfo
from ..models.enums import Status
from ..models.user import User
from ..schemas.chat import (
    ChatAbortRequest,
    ChatClearRequest,
    ChatDeleteRequest,
    ChatHistoryItem,
    ChatProcessRequest,
    UsageInfo,
)
from ..services.chat_service import ChatService
from ..services.chat_store import prompt_node_id
from ..utils.security import get_current_user


router = APIRouter(prefix="/api/chat", tags=["Chat"])

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


async def _require_room(service: ChatService, user: User, room_id: int) -> None:
    room = await service.store.get_room(user.id, room_id)
    if room is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Room not found"
        )


def render_chat(chat: ChatInfo) -> List[ChatHistoryItem]:
    """Prompt and response bubbles of one turn, minus the soft-deleted sides."""
    items = []
    date_time = chat.created_at.isoformat() if chat.created_at else None

    if chat.status not in (Status.DELETED.value, Status.PROMPT_DELETED.value):
        items.append(ChatHistoryItem(
            uuid=chat.uuid,
            date_time=date_time,
            text=chat.prompt,
            images=list(chat.images or []),
            inversion=True,
            parent_message_id=chat.parent_message_id,
            message_id=prompt_node_id(chat.message_id) if chat.message_id else None,
        ))

    if chat.status not in (Status.DELETED.value, Status.RESPONSE_DELETED.value) and chat.response:
        usage = None
        if chat.total_tokens is not None:
            usage = UsageInfo(
                prompt_tokens=chat.prompt_tokens,
                completion_tokens=chat.completion_tokens,
                total_tokens=chat.total_tokens,
                estimated=chat.estimated,
            )
        items.append(ChatHistoryItem(
            uuid=chat.uuid,
            date_time=date_time,
            text=chat.response,
            reasoning=chat.reasoning,
            inversion=False,
            model=chat.model,
            search_query=chat.search_query,
            search_results=chat.search_results,
            search_usage_time=chat.search_usage_time,
            response_count=len(chat.previous_response or []) + 1,
            message_id=chat.message_id,
            usage=usage,
        ))
    return items


@router.post("/process")
async def process_chat(
    chat_request: ChatProcessRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    """Run one chat turn and stream its events."""
    if not chat_request.regenerate and not chat_request.prompt and not chat_request.upload_file_keys:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Prompt is empty"
        )

    async def generate():
        events = service.process(chat_request, current_user)
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            # client went away: let the turn release its key and persist
            await events.aclose()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers=SSE_HEADERS
    )


@router.post("/abort")
async def abort_chat(
    abort_request: ChatAbortRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    """Stop a running generation. Unknown turns are acknowledged as no-ops."""
    aborted = service.abort(current_user.id, abort_request.uuid)
    if aborted:
        logger.info("User %s aborted turn %s", current_user.id, abort_request.uuid)
    return {
        "status": "Success",
        "message": "OK" if aborted else "No running generation",
        "data": {"aborted": aborted},
    }


@router.get("/history", response_model=List[ChatHistoryItem])
async def chat_history(
    room_id: int,
    last_id: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    """One page of rendered history, oldest first."""
    await _require_room(service, current_user, room_id)
    chats = await service.store.list_chats(room_id, last_id)
    items: List[ChatHistoryItem] = []
    for chat in chats:
        items.extend(render_chat(chat))
    return items


@router.post("/delete")
async def delete_chat(
    delete_request: ChatDeleteRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    """Soft-delete the prompt (inversion) or response side of a turn."""
    await _require_room(service, current_user, delete_request.room_id)
    found = await service.store.delete_chat(
        delete_request.room_id, delete_request.uuid, delete_request.inversion
    )
    if not found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found"
        )
    return {"status": "Success", "message": "OK"}


@router.post("/clear")
async def clear_chat(
    clear_request: ChatClearRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service)
):
    """Soft-delete every turn of a room."""
    await _require_room(service, current_user, clear_request.room_id)
    await service.store.clear_chat(clear_request.room_id)
    return {"status": "Success", "message": "OK"}
