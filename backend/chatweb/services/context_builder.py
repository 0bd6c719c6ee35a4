"""
Assemble the multi-turn context sent upstream by walking parent pointers.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from ..utils.image import convert_image_url

logger = logging.getLogger(__name__)

MessageContent = Union[str, List[Dict[str, Any]]]
ImageResolver = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class MessageNode:
    """One prompt or response in a room's conversation tree."""
    id: str
    role: str
    text: str = ""
    parent_message_id: Optional[str] = None
    images: List[str] = field(default_factory=list)
    # soft-deleted nodes are walked through, never included
    deleted: bool = False


class MessageSource(Protocol):
    async def get_message_by_id(self, message_id: str, **scope: Any) -> Optional[MessageNode]:
        ...


async def build_content(text: str, images: List[str], resolve_image: ImageResolver) -> MessageContent:
    """Plain text, or text plus image parts when images are attached."""
    if not images:
        return text
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for image in images:
        url = await resolve_image(image)
        if url:
            parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


class ContextBuilder:
    """Collects up to ``max_count`` ancestors of a message, oldest first.

    Deleted nodes are walked through without being counted, so the walk
    itself is capped at ``max_count * steps_per_message`` lookups.
    """

    def __init__(self, source: MessageSource, resolve_image: ImageResolver = convert_image_url,
                 steps_per_message: int = 4):
        self.source = source
        self.resolve_image = resolve_image
        self.steps_per_message = steps_per_message

    async def build(self, parent_message_id: Optional[str], max_count: int,
                    **scope: Any) -> List[Dict[str, Any]]:
        """``scope`` is forwarded to every lookup (e.g. ``user_id``, ``room_id``)."""
        messages: List[Dict[str, Any]] = []
        visited = set()
        current_id = parent_message_id
        max_steps = max_count * self.steps_per_message

        while current_id and len(messages) < max_count:
            if current_id in visited:
                logger.warning("Cycle in message chain at %s, truncating context", current_id)
                break
            if len(visited) >= max_steps:
                logger.warning("Message chain walk hit %d lookups, truncating context", max_steps)
                break
            visited.add(current_id)

            node = await self.source.get_message_by_id(current_id, **scope)
            if node is None:
                break

            if not node.deleted:
                content = await build_content(node.text or "", node.images, self.resolve_image)
                messages.insert(0, {"role": node.role, "content": content})

            current_id = node.parent_message_id

        return messages


def drop_images(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """The same messages with image parts removed and contents flattened to text."""
    flattened = []
    for message in messages:
        content = message["content"]
        if not isinstance(content, str):
            content = "".join(part.get("text", "") for part in content if part.get("type") == "text")
        flattened.append({**message, "content": content})
    return flattened
