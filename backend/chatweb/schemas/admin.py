"""
Administrative schemas: backend keys and site configuration.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict

from ..models.enums import ApiShape, Status


class KeyConfigBase(BaseModel):
    key: str = Field(..., min_length=1)
    key_model: ApiShape = ApiShape.CHAT_COMPLETIONS
    chat_models: List[str] = []
    user_roles: List[str] = []
    status: Status = Status.NORMAL
    remark: Optional[str] = None
    base_url: Optional[str] = None
    model_aliases: Dict[str, str] = {}
    tool_calls: bool = False
    image_upload: bool = False


class KeyConfigUpsert(KeyConfigBase):
    id: Optional[int] = None


class KeyConfigResponse(KeyConfigBase):
    id: int

    class Config:
        from_attributes = True


class KeyStatusUpdate(BaseModel):
    status: Status


class SearchConfigSchema(BaseModel):
    enabled: bool = False
    provider: str = "tavily"
    api_key: str = ""
    max_results: int = Field(10, ge=1, le=20)
    system_message_get_search_query: Optional[str] = None
    system_message_with_search_result: Optional[str] = None


class AdvancedConfigSchema(BaseModel):
    system_message: Optional[str] = None
    temperature: float = Field(0.8, ge=0, le=2)
    top_p: float = Field(1.0, ge=0, le=1)


class SiteConfigSchema(BaseModel):
    chat_models: List[str] = []
    https_proxy: Optional[str] = None
    api_base_url: Optional[str] = None
    timeout_ms: Optional[int] = None
    search: SearchConfigSchema = SearchConfigSchema()
    advanced: AdvancedConfigSchema = AdvancedConfigSchema()
