"""
Streaming completions against OpenAI-compatible upstreams.

Two API shapes are supported and picked once per key:
``ChatCompletionsBackend`` (``/chat/completions``, plus the vLLM and
Volcengine reasoning switches) and ``ResponsesBackend`` (``/responses``).
Both yield ``StreamDelta`` fragments in upstream order and finish with a
single ``StreamResult``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from openai import AsyncOpenAI, DefaultAsyncHttpxClient

from ..config import settings
from ..models.enums import ApiShape
from ..schemas.admin import SiteConfigSchema
from .cancellation import GenerationHandle
from .config_service import KeyCredential

logger = logging.getLogger(__name__)

ERROR_CODE_MESSAGES: Dict[int, str] = {
    401: "[OpenAI] 提供错误的API密钥 | Incorrect API key provided",
    403: "[OpenAI] 服务器拒绝访问，请稍后再试 | Server refused to access, please try again later",
    500: "[OpenAI] 服务器繁忙，请稍后再试 | Internal Server Error",
    502: "[OpenAI] 错误的网关 |  Bad Gateway",
    503: "[OpenAI] 服务器繁忙，请稍后再试 | Server is busy, please try again later",
    504: "[OpenAI] 网关超时 | Gateway Time-out",
}

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class UpstreamError(Exception):
    """Failure reported inside an upstream stream rather than as an HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def describe_upstream_error(error: BaseException) -> str:
    """User-facing message: fixed text for known status codes, the upstream message otherwise."""
    code = getattr(error, "status_code", None) or getattr(error, "status", None)
    if code in ERROR_CODE_MESSAGES:
        return ERROR_CODE_MESSAGES[code]
    message = getattr(error, "message", None) or str(error)
    return message or "Please check the back-end console"


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated": self.estimated,
        }


@dataclass
class StreamDelta:
    """Incremental fragment; only the new text, never the cumulative string."""
    reasoning: str = ""
    text: str = ""

    def to_dict(self) -> Dict[str, str]:
        data = {}
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.text:
            data["text"] = self.text
        return data


@dataclass
class StreamResult:
    id: str
    reasoning: str = ""
    text: str = ""
    role: str = "assistant"
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reasoning": self.reasoning,
            "text": self.text,
            "role": self.role,
            "detail": {
                "usage": self.usage.to_dict() if self.usage else None,
                "finish_reason": self.finish_reason,
            },
            "aborted": self.aborted,
        }


@dataclass
class CompletionRequest:
    model: str
    messages: List[Dict[str, Any]]
    message_id: str  # fallback id when upstream sends none
    system_message: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    think_enabled: bool = False


StreamItem = Union[StreamDelta, StreamResult]


class ThinkTagParser:
    """Splits ``<think>...</think>`` spans out of streamed content, across chunk borders."""

    def __init__(self):
        self.inside = False

    def feed(self, content: str) -> Tuple[str, str]:
        text, reasoning = "", ""
        rest = content
        while rest:
            if self.inside:
                end = rest.find(THINK_CLOSE)
                if end == -1:
                    reasoning += rest
                    rest = ""
                else:
                    reasoning += rest[:end]
                    rest = rest[end + len(THINK_CLOSE):]
                    self.inside = False
            else:
                start = rest.find(THINK_OPEN)
                if start == -1:
                    text += rest
                    rest = ""
                else:
                    text += rest[:start]
                    rest = rest[start + len(THINK_OPEN):]
                    self.inside = True
        return text, reasoning


@dataclass
class _Accumulator:
    """Cumulative answer state; only fragments actually emitted are recorded."""
    id: str
    reasoning: str = ""
    text: str = ""
    role: str = "assistant"
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None

    def record(self, delta: StreamDelta) -> None:
        self.reasoning += delta.reasoning
        self.text += delta.text

    def result(self, aborted: bool) -> StreamResult:
        return StreamResult(
            id=self.id,
            reasoning=self.reasoning,
            text=self.text,
            role=self.role,
            finish_reason=self.finish_reason,
            usage=self.usage,
            aborted=aborted,
        )


def flatten_content(content: Any) -> str:
    """Text of a message content, dropping image parts."""
    if isinstance(content, str):
        return content
    return "\n".join(part.get("text", "") for part in content or [] if part.get("type") == "text")


class CompletionBackend(ABC):
    """One upstream API shape bound to one key."""

    api_shape: ApiShape

    def __init__(self, client: AsyncOpenAI, key: KeyCredential):
        self.client = client
        self.key = key

    @abstractmethod
    async def complete(self, model: str, messages: List[Dict[str, Any]],
                       system_message: Optional[str] = None) -> str:
        """Single non-streaming completion, returning the answer text."""

    @abstractmethod
    def stream(self, request: CompletionRequest, handle: GenerationHandle) -> AsyncIterator[StreamItem]:
        """Yield deltas in upstream order, then exactly one StreamResult."""

    async def aclose(self) -> None:
        await self.client.close()

    async def _drain(self, stream: Any, handle: GenerationHandle, state: _Accumulator,
                     parse: Any) -> AsyncIterator[StreamItem]:
        """
        Shared streaming loop.

        ``parse(event, state)`` returns the delta carried by one upstream
        event (or None) and updates ids, usage and finish reason on
        ``state``. Abort closes the transport; a read failure after abort
        counts as abort, not as an error.
        """
        handle.attach(stream.close)
        try:
            async for event in stream:
                if handle.cancelled:
                    break
                delta = parse(event, state)
                if delta is None or not (delta.text or delta.reasoning):
                    continue
                if handle.cancelled:
                    break
                state.record(delta)
                yield delta
        except Exception:
            if not handle.cancelled:
                raise
            logger.debug("Upstream stream closed by abort", exc_info=True)
        yield state.result(aborted=handle.cancelled)


class ChatCompletionsBackend(CompletionBackend):
    api_shape = ApiShape.CHAT_COMPLETIONS

    def _extra_body(self, think_enabled: bool) -> Optional[Dict[str, Any]]:
        if self.key.api_shape == ApiShape.VLLM:
            return {"chat_template_kwargs": {"enable_thinking": think_enabled}}
        if self.key.api_shape == ApiShape.VOLCENGINE:
            return {"thinking": {"type": "enabled" if think_enabled else "disabled"}}
        return None

    @staticmethod
    def _with_system(messages: List[Dict[str, Any]], system_message: Optional[str]) -> List[Dict[str, Any]]:
        if system_message:
            return [{"role": "system", "content": system_message}, *messages]
        return list(messages)

    async def complete(self, model, messages, system_message=None) -> str:
        response = await self.client.chat.completions.create(
            model=model,
            messages=self._with_system(messages, system_message),
            stream=False,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def stream(self, request, handle):
        state = _Accumulator(id=request.message_id)
        if handle.cancelled:
            yield state.result(aborted=True)
            return

        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": self._with_system(request.messages, request.system_message),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            kwargs["top_p"] = request.top_p
        extra_body = self._extra_body(request.think_enabled)
        if extra_body:
            kwargs["extra_body"] = extra_body

        stream = await self.client.chat.completions.create(**kwargs)
        parser = ThinkTagParser()

        def parse(chunk: Any, state: _Accumulator) -> Optional[StreamDelta]:
            if getattr(chunk, "id", None):
                state.id = chunk.id
            usage = getattr(chunk, "usage", None)
            if usage is not None and getattr(usage, "total_tokens", None) is not None:
                state.usage = Usage(
                    prompt_tokens=usage.prompt_tokens or 0,
                    completion_tokens=usage.completion_tokens or 0,
                    total_tokens=usage.total_tokens,
                )
            if not chunk.choices:
                return None
            choice = chunk.choices[0]
            if getattr(choice, "finish_reason", None):
                state.finish_reason = choice.finish_reason
            delta = getattr(choice, "delta", None)
            if delta is None:
                return None
            if getattr(delta, "role", None):
                state.role = delta.role

            reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None) or ""
            text, tagged_reasoning = parser.feed(getattr(delta, "content", None) or "")
            return StreamDelta(reasoning=reasoning + tagged_reasoning, text=text)

        async for item in self._drain(stream, handle, state, parse):
            yield item


class ResponsesBackend(CompletionBackend):
    api_shape = ApiShape.RESPONSES

    @staticmethod
    def to_input(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert chat-style messages into Responses API input items."""
        items = []
        for message in messages:
            role = message["role"]
            content = message["content"]
            if isinstance(content, str):
                items.append({"role": role, "content": content})
                continue
            parts = []
            for part in content:
                if part.get("type") == "text":
                    text_type = "output_text" if role == "assistant" else "input_text"
                    parts.append({"type": text_type, "text": part.get("text", "")})
                elif part.get("type") == "image_url":
                    parts.append({
                        "type": "input_image",
                        "image_url": part["image_url"]["url"],
                        "detail": "auto",
                    })
            items.append({"role": role, "content": parts})
        return items

    @staticmethod
    def reasoning_options(think_enabled: bool) -> Dict[str, str]:
        if think_enabled:
            return {"effort": "high", "summary": "auto"}
        return {"effort": "minimal"}

    async def complete(self, model, messages, system_message=None) -> str:
        kwargs: Dict[str, Any] = {
            "model": model,
            "input": self.to_input(messages),
            "reasoning": self.reasoning_options(False),
        }
        if system_message:
            kwargs["instructions"] = system_message
        response = await self.client.responses.create(**kwargs)
        return getattr(response, "output_text", "") or ""

    async def stream(self, request, handle):
        state = _Accumulator(id=request.message_id)
        if handle.cancelled:
            yield state.result(aborted=True)
            return

        kwargs: Dict[str, Any] = {
            "model": request.model,
            "input": self.to_input(request.messages),
            "reasoning": self.reasoning_options(request.think_enabled),
            "stream": True,
        }
        if request.system_message:
            kwargs["instructions"] = request.system_message

        stream = await self.client.responses.create(**kwargs)

        def parse(event: Any, state: _Accumulator) -> Optional[StreamDelta]:
            event_type = getattr(event, "type", "")
            if event_type == "response.output_text.delta":
                return StreamDelta(text=event.delta or "")
            if event_type == "response.reasoning_summary_text.delta":
                return StreamDelta(reasoning=event.delta or "")
            if event_type == "response.created":
                state.id = event.response.id or state.id
            elif event_type in ("response.completed", "response.incomplete"):
                response = event.response
                state.id = response.id or state.id
                state.finish_reason = "stop" if event_type == "response.completed" else "length"
                usage = getattr(response, "usage", None)
                if usage is not None:
                    state.usage = Usage(
                        prompt_tokens=usage.input_tokens or 0,
                        completion_tokens=usage.output_tokens or 0,
                        total_tokens=usage.total_tokens or 0,
                    )
            elif event_type == "response.failed":
                error = getattr(event.response, "error", None)
                raise UpstreamError(getattr(error, "message", None) or "Response failed")
            elif event_type == "error":
                raise UpstreamError(getattr(event, "message", None) or "Upstream error")
            return None

        async for item in self._drain(stream, handle, state, parse):
            yield item


BACKENDS = {
    ApiShape.CHAT_COMPLETIONS: ChatCompletionsBackend,
    ApiShape.VLLM: ChatCompletionsBackend,
    ApiShape.VOLCENGINE: ChatCompletionsBackend,
    ApiShape.RESPONSES: ResponsesBackend,
}


def create_client(key: KeyCredential, config: SiteConfigSchema) -> AsyncOpenAI:
    """Bearer-authenticated client for a key, honouring the proxy and timeout settings."""
    http_client = None
    if config.https_proxy:
        http_client = DefaultAsyncHttpxClient(proxy=config.https_proxy)
    timeout_ms = config.timeout_ms or settings.TIMEOUT_MS
    return AsyncOpenAI(
        base_url=key.base_url or config.api_base_url or settings.OPENAI_API_BASE_URL,
        api_key=key.key,
        timeout=timeout_ms / 1000,
        max_retries=0,
        http_client=http_client,
    )


def resolve_backend(key: KeyCredential, config: SiteConfigSchema) -> CompletionBackend:
    backend_cls = BACKENDS[key.api_shape]
    return backend_cls(create_client(key, config), key)
