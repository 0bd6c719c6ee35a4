"""
Persistence for chat rooms, turns and usage.

Every operation opens its own short session so the adapter can be used
from a streaming response after the request scope has ended.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import AsyncSessionLocal
from ..models.chat import ChatInfo, ChatUsage
from ..models.enums import Status
from ..models.room import ChatRoom
from .context_builder import MessageNode

logger = logging.getLogger(__name__)

PROMPT_PREFIX = "prompt_"
HISTORY_PAGE_SIZE = 20

_PROMPT_HIDDEN = {Status.DELETED.value, Status.PROMPT_DELETED.value}
_RESPONSE_HIDDEN = {Status.DELETED.value, Status.RESPONSE_DELETED.value}


def prompt_node_id(message_id: str) -> str:
    return f"{PROMPT_PREFIX}{message_id}"


def usage_fields(usage: Any) -> Dict[str, Any]:
    """Column values for a usage object, all None when usage is missing."""
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", None),
        "completion_tokens": getattr(usage, "completion_tokens", None),
        "total_tokens": getattr(usage, "total_tokens", None),
        "estimated": getattr(usage, "estimated", None),
    }


class ChatStore:
    """SQLAlchemy-backed conversation store."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    # ---- message nodes ----

    async def _find_by_message_id(self, session, message_id: str, user_id: int,
                                  room_id: int) -> Optional[ChatInfo]:
        result = await session.execute(
            select(ChatInfo)
            .filter(
                ChatInfo.message_id == message_id,
                ChatInfo.user_id == user_id,
                ChatInfo.room_id == room_id,
            )
            .order_by(ChatInfo.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_message_by_id(self, message_id: str, user_id: int,
                                room_id: int) -> Optional[MessageNode]:
        """Resolve a prompt (``prompt_<id>``) or response (``<id>``) node.

        Lookups are confined to one user's room; room ids are chosen by
        the client and only unique per user.
        """
        is_prompt = message_id.startswith(PROMPT_PREFIX)
        lookup_id = message_id[len(PROMPT_PREFIX):] if is_prompt else message_id

        async with self._session_factory() as session:
            chat = await self._find_by_message_id(session, lookup_id, user_id, room_id)

        if chat is None:
            return None

        if is_prompt:
            return MessageNode(
                id=message_id,
                role="user",
                text=chat.prompt or "",
                parent_message_id=chat.parent_message_id,
                images=list(chat.images or []),
                deleted=chat.status in _PROMPT_HIDDEN,
            )
        return MessageNode(
            id=message_id,
            role="assistant",
            text=chat.response or "",
            parent_message_id=prompt_node_id(message_id),
            deleted=chat.status in _RESPONSE_HIDDEN or not chat.response,
        )

    # ---- rooms ----

    async def get_room(self, user_id: int, room_id: int) -> Optional[ChatRoom]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatRoom).filter(
                    ChatRoom.user_id == user_id,
                    ChatRoom.room_id == room_id,
                    ChatRoom.status != Status.DELETED.value,
                )
            )
            return result.scalar_one_or_none()

    async def update_room_chat_model(self, user_id: int, room_id: int, model: str,
                                     image_upload_enabled: Optional[bool] = None,
                                     tool_enabled: Optional[bool] = None) -> None:
        """Remember the room's model and the capabilities of the key serving it."""
        values: Dict[str, Any] = {"chat_model": model}
        if image_upload_enabled is not None:
            values["image_upload_enabled"] = image_upload_enabled
        if tool_enabled is not None:
            values["tool_enabled"] = tool_enabled
        async with self._session_factory() as session:
            await session.execute(
                update(ChatRoom)
                .where(ChatRoom.user_id == user_id, ChatRoom.room_id == room_id)
                .values(**values)
            )
            await session.commit()

    # ---- turns ----

    async def get_chat(self, room_id: int, uuid: int) -> Optional[ChatInfo]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatInfo)
                .filter(ChatInfo.room_id == room_id, ChatInfo.uuid == uuid)
                .order_by(ChatInfo.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_chat(
        self,
        user_id: int,
        room_id: int,
        uuid: int,
        prompt: str,
        images: List[str],
        model: Optional[str],
        parent_message_id: Optional[str],
    ) -> ChatInfo:
        async with self._session_factory() as session:
            chat = ChatInfo(
                user_id=user_id,
                room_id=room_id,
                uuid=uuid,
                prompt=prompt,
                images=list(images),
                model=model,
                parent_message_id=parent_message_id,
                status=Status.NORMAL.value,
            )
            session.add(chat)
            await session.flush()
            # addressable before the upstream id is known
            chat.message_id = str(chat.id)
            await session.commit()
            await session.refresh(chat)
            return chat

    async def update_chat_search(
        self,
        chat_id: int,
        search_query: str,
        search_results: Optional[List[Dict[str, Any]]] = None,
        search_usage_time: Optional[float] = None,
    ) -> None:
        values: Dict[str, Any] = {"search_query": search_query}
        if search_results is not None:
            values["search_results"] = search_results
            values["search_usage_time"] = search_usage_time
        async with self._session_factory() as session:
            await session.execute(update(ChatInfo).where(ChatInfo.id == chat_id).values(**values))
            await session.commit()

    async def update_chat_result(
        self,
        chat_id: int,
        reasoning: Optional[str],
        response: str,
        message_id: Optional[str],
        model: Optional[str],
        usage: Any = None,
        previous_response: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "reasoning": reasoning,
            "response": response,
            "model": model,
            **usage_fields(usage),
        }
        if message_id:
            values["message_id"] = message_id
        if previous_response is not None:
            values["previous_response"] = previous_response
        async with self._session_factory() as session:
            await session.execute(update(ChatInfo).where(ChatInfo.id == chat_id).values(**values))
            await session.commit()

    async def insert_chat_usage(
        self,
        user_id: int,
        room_id: int,
        chat_id: int,
        message_id: Optional[str],
        model: Optional[str],
        usage: Any,
    ) -> ChatUsage:
        async with self._session_factory() as session:
            fields = {k: v for k, v in usage_fields(usage).items() if v is not None}
            row = ChatUsage(
                user_id=user_id,
                room_id=room_id,
                chat_id=chat_id,
                message_id=message_id,
                model=model,
                **fields,
            )
            session.add(row)
            await session.commit()
            return row

    async def list_chats(self, room_id: int, last_id: Optional[int] = None) -> List[ChatInfo]:
        """One page of turns older than ``last_id`` (a turn uuid), oldest first."""
        query = select(ChatInfo).filter(
            ChatInfo.room_id == room_id,
            ChatInfo.status != Status.DELETED.value,
        )
        if last_id is not None:
            query = query.filter(ChatInfo.uuid < last_id)
        query = query.order_by(ChatInfo.uuid.desc()).limit(HISTORY_PAGE_SIZE)
        async with self._session_factory() as session:
            chats = list((await session.execute(query)).scalars().all())
        chats.reverse()
        return chats

    async def delete_chat(self, room_id: int, uuid: int, inversion: bool) -> bool:
        """
        Soft-delete one side of a turn.

        Deleting the second side of a turn marks the whole turn deleted.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatInfo).filter(ChatInfo.room_id == room_id, ChatInfo.uuid == uuid)
            )
            chat = result.scalars().first()
            if chat is None:
                return False

            if chat.status == Status.PROMPT_DELETED.value and not inversion:
                chat.status = Status.DELETED.value
            elif chat.status == Status.RESPONSE_DELETED.value and inversion:
                chat.status = Status.DELETED.value
            elif inversion:
                chat.status = Status.PROMPT_DELETED.value
            else:
                chat.status = Status.RESPONSE_DELETED.value
            await session.commit()
            return True

    async def clear_chat(self, room_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ChatInfo).where(ChatInfo.room_id == room_id).values(status=Status.DELETED.value)
            )
            await session.commit()
