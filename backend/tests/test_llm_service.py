from types import SimpleNamespace

import pytest

from chatweb.models.enums import ApiShape
from chatweb.services.cancellation import CancellationRegistry
from chatweb.services.config_service import KeyCredential
from chatweb.services.llm_service import (
    ChatCompletionsBackend,
    CompletionRequest,
    ResponsesBackend,
    StreamDelta,
    StreamResult,
    ThinkTagParser,
    UpstreamError,
    describe_upstream_error,
)


class FakeStream:
    def __init__(self, events, error=None):
        self.events = list(events)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            if self.closed:
                raise RuntimeError("stream closed")
            yield event
        if self.error:
            raise self.error

    async def close(self):
        self.closed = True


class FakeEndpoint:
    def __init__(self, result):
        self.result = result
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.result


class FakeClient:
    def __init__(self, result):
        self.endpoint = FakeEndpoint(result)
        self.chat = SimpleNamespace(completions=self.endpoint)
        self.responses = self.endpoint
        self.closed = False

    async def close(self):
        self.closed = True


def chunk(content=None, reasoning_content=None, finish_reason=None, usage=None, chunk_id="chatcmpl-1"):
    delta = SimpleNamespace(role="assistant", content=content, reasoning_content=reasoning_content)
    choices = [SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    return SimpleNamespace(id=chunk_id, choices=choices, usage=usage)


def usage_chunk(prompt=5, completion=7):
    usage = SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
    return SimpleNamespace(id="chatcmpl-1", choices=[], usage=usage)


def request(**overrides):
    values = dict(model="gpt-4.1", messages=[{"role": "user", "content": "hi"}], message_id="42",
                  system_message="sys")
    values.update(overrides)
    return CompletionRequest(**values)


def key(shape=ApiShape.CHAT_COMPLETIONS):
    return KeyCredential(id=1, key="sk", api_shape=shape)


async def collect(agen):
    return [item async for item in agen]


@pytest.fixture
def handle():
    return CancellationRegistry().register(1, 1)


def test_think_tag_parser_across_chunks():
    parser = ThinkTagParser()
    assert parser.feed("<thi") == ("<thi", "")
    parser = ThinkTagParser()
    assert parser.feed("<think>plan") == ("", "plan")
    assert parser.feed(" more</think>answer") == ("answer", " more")
    assert parser.feed(" done") == (" done", "")


def test_describe_upstream_error():
    known = SimpleNamespace(status_code=401, message="bad key")
    assert "Incorrect API key provided" in describe_upstream_error(known)
    teapot = UpstreamError("I'm a teapot", status_code=418)
    assert describe_upstream_error(teapot) == "I'm a teapot"
    assert describe_upstream_error(RuntimeError("boom")) == "boom"


async def test_chat_completions_stream(handle):
    stream = FakeStream([
        chunk(reasoning_content="thinking"),
        chunk(content="Hel"),
        chunk(content="lo", finish_reason="stop"),
        usage_chunk(),
    ])
    client = FakeClient(stream)
    backend = ChatCompletionsBackend(client, key())

    items = await collect(backend.stream(request(temperature=0.5), handle))

    deltas = [item for item in items if isinstance(item, StreamDelta)]
    assert [(d.reasoning, d.text) for d in deltas] == [("thinking", ""), ("", "Hel"), ("", "lo")]
    result = items[-1]
    assert isinstance(result, StreamResult)
    assert result.id == "chatcmpl-1"
    assert result.text == "Hello"
    assert result.reasoning == "thinking"
    assert result.finish_reason == "stop"
    assert result.usage.total_tokens == 12
    assert not result.aborted

    kwargs = client.endpoint.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
    assert kwargs["stream_options"] == {"include_usage": True}
    assert kwargs["temperature"] == 0.5
    assert "top_p" not in kwargs
    assert "extra_body" not in kwargs


async def test_think_tags_in_content_become_reasoning(handle):
    stream = FakeStream([chunk(content="<think>why"), chunk(content="</think>because")])
    backend = ChatCompletionsBackend(FakeClient(stream), key())
    result = (await collect(backend.stream(request(), handle)))[-1]
    assert result.reasoning == "why"
    assert result.text == "because"


@pytest.mark.parametrize("shape, think, expected", [
    (ApiShape.VLLM, True, {"chat_template_kwargs": {"enable_thinking": True}}),
    (ApiShape.VOLCENGINE, False, {"thinking": {"type": "disabled"}}),
])
async def test_vendor_reasoning_switches(handle, shape, think, expected):
    client = FakeClient(FakeStream([chunk(content="x")]))
    backend = ChatCompletionsBackend(client, key(shape))
    await collect(backend.stream(request(think_enabled=think), handle))
    assert client.endpoint.kwargs["extra_body"] == expected


async def test_abort_keeps_only_emitted_text(handle):
    stream = FakeStream([chunk(content="one "), chunk(content="two "), chunk(content="three")])
    backend = ChatCompletionsBackend(FakeClient(stream), key())

    items = []
    async for item in backend.stream(request(), handle):
        items.append(item)
        if isinstance(item, StreamDelta):
            handle.cancel()

    result = items[-1]
    assert result.aborted
    assert result.text == "one "
    assert len([item for item in items if isinstance(item, StreamDelta)]) == 1


async def test_already_cancelled_handle_skips_upstream(handle):
    client = FakeClient(FakeStream([chunk(content="x")]))
    handle.cancel()
    items = await collect(ChatCompletionsBackend(client, key()).stream(request(), handle))
    assert len(items) == 1 and items[0].aborted
    assert client.endpoint.kwargs is None


async def test_stream_error_propagates(handle):
    stream = FakeStream([chunk(content="partial")], error=UpstreamError("I'm a teapot", 418))
    backend = ChatCompletionsBackend(FakeClient(stream), key())
    items = []
    with pytest.raises(UpstreamError):
        async for item in backend.stream(request(), handle):
            items.append(item)
    assert [item.text for item in items] == ["partial"]


async def test_responses_stream(handle):
    response_done = SimpleNamespace(
        id="resp_1",
        usage=SimpleNamespace(input_tokens=3, output_tokens=4, total_tokens=7),
    )
    stream = FakeStream([
        SimpleNamespace(type="response.created", response=SimpleNamespace(id="resp_1")),
        SimpleNamespace(type="response.reasoning_summary_text.delta", delta="plan"),
        SimpleNamespace(type="response.output_text.delta", delta="Hi"),
        SimpleNamespace(type="response.completed", response=response_done),
    ])
    client = FakeClient(stream)
    backend = ResponsesBackend(client, key(ApiShape.RESPONSES))

    items = await collect(backend.stream(request(think_enabled=True, temperature=0.3), handle))
    result = items[-1]
    assert result.id == "resp_1"
    assert result.text == "Hi"
    assert result.reasoning == "plan"
    assert result.usage.prompt_tokens == 3 and result.usage.total_tokens == 7

    kwargs = client.endpoint.kwargs
    assert kwargs["instructions"] == "sys"
    assert kwargs["reasoning"] == {"effort": "high", "summary": "auto"}
    assert "temperature" not in kwargs


async def test_responses_failed_event_raises(handle):
    failed = SimpleNamespace(
        type="response.failed",
        response=SimpleNamespace(error=SimpleNamespace(message="quota exceeded")),
    )
    backend = ResponsesBackend(FakeClient(FakeStream([failed])), key(ApiShape.RESPONSES))
    with pytest.raises(UpstreamError, match="quota exceeded"):
        await collect(backend.stream(request(), handle))


def test_responses_input_conversion():
    items = ResponsesBackend.to_input([
        {"role": "user", "content": [
            {"type": "text", "text": "see"},
            {"type": "image_url", "image_url": {"url": "https://img"}},
        ]},
        {"role": "assistant", "content": [{"type": "text", "text": "ok"}]},
    ])
    assert items[0]["content"] == [
        {"type": "input_text", "text": "see"},
        {"type": "input_image", "image_url": "https://img", "detail": "auto"},
    ]
    assert items[1]["content"] == [{"type": "output_text", "text": "ok"}]
    assert ResponsesBackend.reasoning_options(False) == {"effort": "minimal"}
