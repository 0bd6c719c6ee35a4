"""
Server-Sent Events framing.
"""

import json
from typing import Any

END_SENTINEL = "[DONE]"


def format_sse(event: str, data: Any) -> str:
    """Render one named SSE frame with a JSON payload."""
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"
