"""
Web search augmentation.

Before the main completion, the model is asked to phrase a search query
inside a ``<search_query>`` tag. The query is run against Tavily and the
results are spliced into the system message. Any failure here only means
the answer is produced without search results.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..config import settings
from ..schemas.admin import SearchConfigSchema
from .llm_service import CompletionBackend, flatten_content

logger = logging.getLogger(__name__)

SEARCH_DEPTH = "advanced"
CHUNKS_PER_SOURCE = 3
MIN_RESULTS = 1
MAX_RESULTS = 20
DEFAULT_RESULTS = 10

DEFAULT_QUERY_TEMPLATE = (
    "Current time: {current_time}\n"
    "You are a search assistant. Read the conversation and decide what to look up on the web "
    "to answer the user's latest message. Reply with a single concise query wrapped in "
    "<search_query></search_query>, for example <search_query>latest python release</search_query>. "
    "Reply with nothing else."
)

DEFAULT_RESULT_TEMPLATE = (
    "Current time: {current_time}\n"
    "The following web search results were retrieved for the query \"{search_query}\". "
    "Use them to answer the user's question and cite sources by their URL when relevant.\n\n"
    "{search_results}"
)

_QUERY_TAG = re.compile(r"<search_query>(.*?)</search_query>", re.DOTALL)
_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_HTML_IMAGE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)


@dataclass
class SearchResult:
    title: str
    url: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "content": self.content}


@dataclass
class SearchOutcome:
    query: str
    results: List[SearchResult] = field(default_factory=list)
    usage_time: float = 0.0


def extract_search_query(text: Optional[str]) -> Optional[str]:
    """Query inside the ``<search_query>`` tag, or None when the tag is missing or empty."""
    if not text:
        return None
    match = _QUERY_TAG.search(text)
    if not match:
        return None
    query = match.group(1).strip()
    return query or None


def strip_images(text: str) -> str:
    text = _MARKDOWN_IMAGE.sub("", text or "")
    return _HTML_IMAGE.sub("", text)


def clamp_max_results(value: Optional[int]) -> int:
    if not value:
        return DEFAULT_RESULTS
    return max(MIN_RESULTS, min(MAX_RESULTS, int(value)))


def format_results(results: List[SearchResult]) -> str:
    blocks = []
    for index, result in enumerate(results, start=1):
        blocks.append(f"[{index}] {result.title}\nURL: {result.url}\n{result.content}")
    return "\n\n".join(blocks)


def render_template(template: str, **values: str) -> str:
    # plain replacement, search results may contain braces
    for name, value in values.items():
        template = template.replace("{" + name + "}", value)
    return template


class TavilySearchProvider:
    """Minimal async client for the Tavily search endpoint."""

    def __init__(self, api_key: str, api_base: Optional[str] = None):
        self.api_key = api_key
        self.api_base = (api_base or settings.SEARCH_API_BASE).rstrip("/")

    async def search(
        self,
        query: str,
        search_depth: str = SEARCH_DEPTH,
        chunks_per_source: int = CHUNKS_PER_SOURCE,
        max_results: int = DEFAULT_RESULTS,
        include_raw_content: bool = False,
        timeout: int = settings.SEARCH_TIMEOUT_SECONDS,
    ) -> SearchOutcome:
        payload = {
            "query": query,
            "search_depth": search_depth,
            "chunks_per_source": chunks_per_source,
            "max_results": max_results,
            "include_raw_content": include_raw_content,
            "include_images": False,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        started = time.monotonic()
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.api_base}/search",
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                response.raise_for_status()
                data = await response.json()

        results = [
            SearchResult(
                title=item.get("title") or "",
                url=item.get("url") or "",
                content=strip_images(item.get("content") or ""),
            )
            for item in data.get("results", [])
        ]
        usage_time = data.get("response_time")
        if usage_time is None:
            usage_time = time.monotonic() - started
        return SearchOutcome(query=query, results=results, usage_time=float(usage_time))


class SearchAugmenter:
    """Query generation, search, and prompt injection."""

    def __init__(
        self,
        provider_factory: Callable[[str], Any] = TavilySearchProvider,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.provider_factory = provider_factory
        self.now = now

    def _current_time(self) -> str:
        return self.now().strftime("%Y-%m-%d %H:%M:%S")

    async def generate_query(
        self,
        backend: CompletionBackend,
        model: str,
        messages: List[Dict[str, Any]],
        config: SearchConfigSchema,
    ) -> Optional[str]:
        """Ask the model for a search query. None means skip search."""
        template = config.system_message_get_search_query or DEFAULT_QUERY_TEMPLATE
        instruction = render_template(template, current_time=self._current_time())
        text_messages = [
            {"role": message["role"], "content": flatten_content(message["content"])}
            for message in messages
        ]
        try:
            reply = await backend.complete(model, text_messages, system_message=instruction)
        except Exception:
            logger.exception("Search query generation failed, continuing without search")
            return None

        query = extract_search_query(reply)
        if query is None:
            logger.info("Model returned no <search_query> tag, skipping search")
        return query

    async def search(self, query: str, config: SearchConfigSchema) -> Optional[SearchOutcome]:
        """Run the search. None on any failure."""
        provider = self.provider_factory(config.api_key)
        try:
            return await provider.search(
                query,
                search_depth=SEARCH_DEPTH,
                chunks_per_source=CHUNKS_PER_SOURCE,
                max_results=clamp_max_results(config.max_results),
                include_raw_content=False,
                timeout=settings.SEARCH_TIMEOUT_SECONDS,
            )
        except Exception:
            logger.exception("Web search for %r failed, continuing without results", query)
            return None

    def build_system_message(
        self,
        outcome: SearchOutcome,
        config: SearchConfigSchema,
        base_system_message: Optional[str] = None,
    ) -> str:
        template = config.system_message_with_search_result or DEFAULT_RESULT_TEMPLATE
        injected = render_template(
            template,
            current_time=self._current_time(),
            search_query=outcome.query,
            search_results=format_results(outcome.results),
        )
        if base_system_message:
            return f"{base_system_message}\n\n{injected}"
        return injected
