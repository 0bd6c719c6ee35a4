"""
Cached access to administrative configuration and backend keys.

Both are stored in the database and read through a TTL cache. Readers may
see data up to one TTL old; administrative writes clear the cache.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import AsyncSessionLocal
from ..models.enums import ApiShape, Status, UserRole
from ..models.key import KeyConfig, SiteConfig
from ..schemas.admin import SiteConfigSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")

SITE_CONFIG_ROW_ID = 1


class TTLCache(Generic[T]):
    """Holds one loaded value until it expires or is invalidated."""

    def __init__(
        self,
        loader: Callable[[], Awaitable[T]],
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._value: Optional[T] = None
        self._expires_at = 0.0

    async def get(self) -> T:
        now = self._clock()
        if self._value is not None and self._expires_at > now:
            return self._value
        value = await self._loader()
        self._value = value
        self._expires_at = now + self._ttl
        return value

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = 0.0


@dataclass
class KeyCredential:
    """Immutable snapshot of a key row, safe to share between requests."""
    id: int
    key: str
    api_shape: ApiShape = ApiShape.CHAT_COMPLETIONS
    chat_models: List[str] = field(default_factory=list)
    user_roles: List[str] = field(default_factory=list)
    enabled: bool = True
    base_url: Optional[str] = None
    model_aliases: Dict[str, str] = field(default_factory=dict)
    tool_calls: bool = False
    image_upload: bool = False
    remark: Optional[str] = None

    def display_name(self, model: str) -> str:
        return self.model_aliases.get(model, model)


def default_site_config() -> SiteConfigSchema:
    """Site configuration built from environment settings alone."""
    return SiteConfigSchema.model_validate({
        "chat_models": [m.strip() for m in settings.DEFAULT_CHAT_MODELS.split(",") if m.strip()],
        "https_proxy": settings.HTTPS_PROXY,
        "api_base_url": settings.OPENAI_API_BASE_URL,
        "timeout_ms": settings.TIMEOUT_MS,
        "search": {
            "enabled": settings.SEARCH_ENABLED,
            "api_key": settings.SEARCH_API_KEY,
            "max_results": settings.SEARCH_MAX_RESULTS,
        },
        "advanced": {
            "system_message": settings.DEFAULT_SYSTEM_MESSAGE,
            "temperature": settings.DEFAULT_TEMPERATURE,
            "top_p": settings.DEFAULT_TOP_P,
        },
    })


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for name, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(name), dict):
            merged[name] = _merge(merged[name], value)
        elif value is not None:
            merged[name] = value
    return merged


def to_credential(row: KeyConfig, chat_models: List[str]) -> KeyCredential:
    """Snapshot a key row, filling the role and model defaults."""
    roles = list(row.user_roles or []) or [
        UserRole.ADMIN.value, UserRole.USER.value, UserRole.GUEST.value
    ]
    models = list(row.chat_models or []) or list(chat_models)
    return KeyCredential(
        id=row.id,
        key=row.key,
        api_shape=ApiShape(row.key_model or ApiShape.CHAT_COMPLETIONS.value),
        chat_models=models,
        user_roles=roles,
        enabled=row.status == Status.NORMAL.value,
        base_url=row.base_url,
        model_aliases=dict(row.model_aliases or {}),
        tool_calls=bool(row.tool_calls),
        image_upload=bool(row.image_upload),
        remark=row.remark,
    )


class ConfigService:
    """Owns the config and key caches and the writes that invalidate them."""

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        ttl: float = settings.CONFIG_CACHE_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self._config_cache: TTLCache[SiteConfigSchema] = TTLCache(self._load_config, ttl)
        self._key_cache: TTLCache[List[KeyCredential]] = TTLCache(self._load_keys, ttl)

    # ---- reads ----

    async def get_config(self) -> SiteConfigSchema:
        return await self._config_cache.get()

    async def get_keys(self) -> List[KeyCredential]:
        return await self._key_cache.get()

    async def _load_config(self) -> SiteConfigSchema:
        async with self._session_factory() as session:
            row = await session.get(SiteConfig, SITE_CONFIG_ROW_ID)
            stored = dict(row.data or {}) if row else {}
        return SiteConfigSchema.model_validate(
            _merge(default_site_config().model_dump(), stored)
        )

    async def _load_keys(self) -> List[KeyCredential]:
        config = await self.get_config()
        async with self._session_factory() as session:
            rows = list((await session.execute(select(KeyConfig).order_by(KeyConfig.id))).scalars().all())
            if not rows and settings.OPENAI_API_KEY:
                row = KeyConfig(key=settings.OPENAI_API_KEY, key_model=ApiShape.CHAT_COMPLETIONS.value,
                                chat_models=[], user_roles=[], remark="default")
                session.add(row)
                await session.commit()
                await session.refresh(row)
                logger.info("Bootstrapped default API key from OPENAI_API_KEY")
                rows = [row]
        return [to_credential(row, config.chat_models) for row in rows]

    # ---- writes ----

    def clear_config_cache(self) -> None:
        self._config_cache.invalidate()

    def clear_key_cache(self) -> None:
        self._key_cache.invalidate()

    async def save_config(self, db: AsyncSession, config: SiteConfigSchema) -> SiteConfigSchema:
        row = await db.get(SiteConfig, SITE_CONFIG_ROW_ID)
        if row is None:
            row = SiteConfig(id=SITE_CONFIG_ROW_ID)
            db.add(row)
        row.data = config.model_dump()
        await db.commit()
        self.clear_config_cache()
        # key defaults derive from the chat model list
        self.clear_key_cache()
        return config

    async def upsert_key(self, db: AsyncSession, values: Dict[str, Any], key_id: Optional[int] = None) -> KeyConfig:
        row = None
        if key_id is not None:
            row = await db.get(KeyConfig, key_id)
            if row is None:
                raise ValueError("Key not found")
        if row is None:
            row = KeyConfig()
            db.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        await db.commit()
        await db.refresh(row)
        self.clear_key_cache()
        return row

    async def set_key_status(self, db: AsyncSession, key_id: int, status: Status) -> KeyConfig:
        row = await db.get(KeyConfig, key_id)
        if row is None:
            raise ValueError("Key not found")
        row.status = status.value
        await db.commit()
        await db.refresh(row)
        self.clear_key_cache()
        return row

    async def list_key_rows(self, db: AsyncSession) -> List[KeyConfig]:
        result = await db.execute(select(KeyConfig).order_by(KeyConfig.id))
        return list(result.scalars().all())
