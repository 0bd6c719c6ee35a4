"""
Chat request and history schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict


class ChatContext(BaseModel):
    parent_message_id: Optional[str] = None


class ChatProcessRequest(BaseModel):
    """Body of a streamed chat turn."""
    room_id: int
    uuid: int  # client-generated turn id
    regenerate: bool = False
    prompt: str = ""
    upload_file_keys: List[str] = []
    options: ChatContext = ChatContext()
    system_message: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    top_p: Optional[float] = Field(None, ge=0, le=1)


class ChatAbortRequest(BaseModel):
    uuid: int


class ChatDeleteRequest(BaseModel):
    room_id: int
    uuid: int
    inversion: bool  # True deletes the prompt side, False the response side


class ChatClearRequest(BaseModel):
    room_id: int


class UsageInfo(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    estimated: Optional[bool] = None


class ChatHistoryItem(BaseModel):
    """One rendered prompt or response bubble."""
    uuid: int
    date_time: Optional[str] = None
    text: Optional[str] = None
    reasoning: Optional[str] = None
    images: List[str] = []
    inversion: bool
    model: Optional[str] = None
    search_query: Optional[str] = None
    search_results: Optional[List[Dict[str, Any]]] = None
    search_usage_time: Optional[float] = None
    response_count: Optional[int] = None
    parent_message_id: Optional[str] = None
    message_id: Optional[str] = None
    usage: Optional[UsageInfo] = None
