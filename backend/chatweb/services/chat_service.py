"""
Chat reply orchestration.

``ChatService.process`` runs one turn end to end and yields ``ChatEvent``s
for the transport: context assembly, key lease, optional web search,
streamed completion, persistence. Every path ends with an ``end`` event.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import anyio

from ..config import settings
from ..models.chat import ChatInfo
from ..schemas.admin import SiteConfigSchema
from ..schemas.chat import ChatProcessRequest
from ..utils.image import convert_image_url
from ..utils.sse import END_SENTINEL, format_sse
from .cancellation import CancellationRegistry
from .chat_store import ChatStore
from .config_service import ConfigService, KeyCredential
from .context_builder import ContextBuilder, ImageResolver, build_content, drop_images
from .key_lease import KeyLeaseManager
from .llm_service import (
    CompletionBackend,
    CompletionRequest,
    StreamDelta,
    StreamResult,
    describe_upstream_error,
    resolve_backend,
)
from .search_service import SearchAugmenter

logger = logging.getLogger(__name__)

NO_KEY_MESSAGE = "没有对应的apikeys配置。请再试一次 | No available apikeys configuration. Please try again."
NO_SEARCH_KEY_MESSAGE = "搜索功能缺少 API Key | Search is enabled but no search API key is configured."
UNKNOWN_ROOM_MESSAGE = "未知的会话 | Unknown room"
UNKNOWN_CHAT_MESSAGE = "未找到要重新生成的消息 | Message to regenerate not found"
NO_MODEL_MESSAGE = "未配置聊天模型 | No chat model configured"

BackendFactory = Callable[[KeyCredential, SiteConfigSchema], CompletionBackend]


class ChatConfigError(Exception):
    """Configuration problem surfaced to the user; never retried."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass
class ChatEvent:
    name: str
    data: Any

    def to_sse(self) -> str:
        return format_sse(self.name, self.data)


def _error(message: str) -> ChatEvent:
    return ChatEvent("error", {"message": message})


def _end() -> ChatEvent:
    return ChatEvent("end", END_SENTINEL)


class ChatService:
    """Runs chat turns. Shared collaborators are injected, not global."""

    def __init__(
        self,
        store: ChatStore,
        config_service: ConfigService,
        lease_manager: KeyLeaseManager,
        registry: CancellationRegistry,
        search_augmenter: Optional[SearchAugmenter] = None,
        backend_factory: BackendFactory = resolve_backend,
        resolve_image: ImageResolver = convert_image_url,
    ):
        self.store = store
        self.config_service = config_service
        self.lease_manager = lease_manager
        self.registry = registry
        self.search_augmenter = search_augmenter or SearchAugmenter()
        self.backend_factory = backend_factory
        self.resolve_image = resolve_image
        self.context_builder = ContextBuilder(store, resolve_image)

    def abort(self, user_id: int, turn_id: int) -> bool:
        return self.registry.abort(user_id, turn_id)

    async def process(self, request: ChatProcessRequest, user: Any) -> AsyncIterator[ChatEvent]:
        config = await self.config_service.get_config()
        room = await self.store.get_room(user.id, request.room_id)
        if room is None:
            logger.error("Unable to get chat room %s for user %s", request.room_id, user.id)
            yield _error(UNKNOWN_ROOM_MESSAGE)
            yield _end()
            return

        model = room.chat_model or (config.chat_models[0] if config.chat_models else None)
        if not model:
            yield _error(NO_MODEL_MESSAGE)
            yield _end()
            return

        if request.regenerate:
            chat = await self.store.get_chat(request.room_id, request.uuid)
            if chat is None:
                yield _error(UNKNOWN_CHAT_MESSAGE)
                yield _end()
                return
            prompt, images = chat.prompt, list(chat.images or [])
            parent_message_id = chat.parent_message_id
        else:
            prompt, images = request.prompt, list(request.upload_file_keys)
            parent_message_id = request.options.parent_message_id
            chat = await self.store.insert_chat(
                user.id, request.room_id, request.uuid, prompt, images, model, parent_message_id
            )

        system_message = room.prompt or request.system_message or config.advanced.system_message
        temperature = request.temperature if request.temperature is not None else config.advanced.temperature
        top_p = request.top_p if request.top_p is not None else config.advanced.top_p

        key: Optional[KeyCredential] = None
        backend: Optional[CompletionBackend] = None
        handle = self.registry.register(user.id, request.uuid)
        outcome: Optional[StreamResult] = None
        snapshot = StreamResult(id=chat.message_id or str(chat.id))

        try:
            try:
                max_count = 0
                if room.using_context:
                    max_count = room.max_context_count
                    if max_count is None:
                        max_count = settings.DEFAULT_MAX_CONTEXT_COUNT
                history = await self.context_builder.build(
                    parent_message_id, max_count, user_id=user.id, room_id=request.room_id
                )
                content = await build_content(prompt, images, self.resolve_image)
                messages: List[Dict[str, Any]] = history + [{"role": "user", "content": content}]

                key = await self.lease_manager.acquire(
                    await self.config_service.get_keys(), user.roles or [], model
                )
                if key is None:
                    raise ChatConfigError(NO_KEY_MESSAGE)
                if not key.image_upload:
                    messages = drop_images(messages)
                backend = self.backend_factory(key, config)
                await self.store.update_room_chat_model(
                    user.id, request.room_id, model,
                    image_upload_enabled=key.image_upload, tool_enabled=key.tool_calls,
                )

                if room.search_enabled:
                    async for event in self._augment(backend, model, messages, config, chat,
                                                     system_message):
                        if isinstance(event, str):
                            system_message = event
                        else:
                            yield event

                completion = CompletionRequest(
                    model=model,
                    messages=messages,
                    message_id=snapshot.id,
                    system_message=system_message,
                    temperature=temperature,
                    top_p=top_p,
                    think_enabled=bool(room.think_enabled),
                )
                async for item in backend.stream(completion, handle):
                    if isinstance(item, StreamDelta):
                        snapshot.reasoning += item.reasoning
                        snapshot.text += item.text
                        yield ChatEvent("delta", item.to_dict())
                        yield ChatEvent("message", {
                            "id": snapshot.id,
                            "reasoning": snapshot.reasoning,
                            "text": snapshot.text,
                            "role": snapshot.role,
                        })
                    else:
                        outcome = item

                if outcome is None:
                    outcome = StreamResult(id=snapshot.id, reasoning=snapshot.reasoning,
                                           text=snapshot.text, aborted=handle.cancelled)
                data = outcome.to_dict()
                data["model"] = key.display_name(model)
                yield ChatEvent("complete", data)

            except Exception as exc:
                if isinstance(exc, ChatConfigError):
                    logger.warning("Chat turn %s not processed: %s", request.uuid, exc.message)
                else:
                    logger.exception("Chat turn %s failed", request.uuid)
                message = describe_upstream_error(exc)
                yield _error(message)
                outcome = StreamResult(
                    id=snapshot.id,
                    reasoning=snapshot.reasoning,
                    text=snapshot.text or message,
                )
        finally:
            self.registry.remove(handle)
            self.lease_manager.release(key)
            if outcome is None and (snapshot.text or snapshot.reasoning):
                # client went away mid-stream, keep what was delivered
                outcome = StreamResult(id=snapshot.id, reasoning=snapshot.reasoning,
                                       text=snapshot.text, aborted=True)
            # a disconnect cancels this task; the cleanup awaits must still run
            with anyio.CancelScope(shield=True):
                if backend is not None:
                    try:
                        await backend.aclose()
                    except Exception:
                        logger.warning("Closing upstream client failed", exc_info=True)
                if outcome is not None:
                    await self._persist(user, request, chat, model, outcome)

        yield _end()

    async def _augment(
        self,
        backend: CompletionBackend,
        model: str,
        messages: List[Dict[str, Any]],
        config: SiteConfigSchema,
        chat: ChatInfo,
        system_message: Optional[str],
    ) -> AsyncIterator[Any]:
        """
        Search step. Yields ChatEvents for the transport and, when results
        were found, the replacement system message as a plain string.
        """
        search_config = config.search
        if not search_config.enabled:
            logger.debug("Search requested by room but disabled site-wide")
            return
        if not search_config.api_key:
            raise ChatConfigError(NO_SEARCH_KEY_MESSAGE)

        query = await self.search_augmenter.generate_query(backend, model, messages, search_config)
        if not query:
            return
        yield ChatEvent("search_query", {"search_query": query})
        await self._save_search(chat.id, query)

        outcome = await self.search_augmenter.search(query, search_config)
        if outcome is None:
            return
        results = [result.to_dict() for result in outcome.results]
        yield ChatEvent("search_results", {
            "search_results": results,
            "search_usage_time": outcome.usage_time,
        })
        await self._save_search(chat.id, query, results, outcome.usage_time)
        yield self.search_augmenter.build_system_message(outcome, search_config, system_message)

    async def _save_search(self, chat_id: int, query: str,
                           results: Optional[List[Dict[str, Any]]] = None,
                           usage_time: Optional[float] = None) -> None:
        try:
            await self.store.update_chat_search(chat_id, query, results, usage_time)
        except Exception:
            logger.exception("Failed to store search data for chat %s", chat_id)

    async def _persist(self, user: Any, request: ChatProcessRequest, chat: ChatInfo,
                       model: str, outcome: StreamResult) -> None:
        """Best-effort write of the final answer; the client already has it."""
        try:
            previous = None
            if request.regenerate and chat.response is not None:
                previous = list(chat.previous_response or [])
                previous.append({
                    "response": chat.response,
                    "reasoning": chat.reasoning,
                    "message_id": chat.message_id,
                    "prompt_tokens": chat.prompt_tokens,
                    "completion_tokens": chat.completion_tokens,
                    "total_tokens": chat.total_tokens,
                })
            await self.store.update_chat_result(
                chat.id, outcome.reasoning, outcome.text, outcome.id, model, outcome.usage, previous
            )
            if outcome.usage is not None:
                await self.store.insert_chat_usage(
                    user.id, request.room_id, chat.id, outcome.id, model, outcome.usage
                )
        except Exception:
            logger.exception("Failed to persist result of chat %s", chat.id)
