"""
Administration routes: upstream keys and site configuration.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import User
from ..schemas.admin import (
    KeyConfigResponse,
    KeyConfigUpsert,
    KeyStatusUpdate,
    SiteConfigSchema,
)
from ..services.config_service import ConfigService
from ..utils.security import get_admin_user


router = APIRouter(prefix="/api/admin", tags=["Admin"])

logger = logging.getLogger(__name__)


def get_config_service(request: Request) -> ConfigService:
    return request.app.state.config_service


@router.get("/keys", response_model=List[KeyConfigResponse])
async def list_keys(
    admin: User = Depends(get_admin_user),
    config_service: ConfigService = Depends(get_config_service),
    db: AsyncSession = Depends(get_db)
):
    return await config_service.list_key_rows(db)


@router.post("/keys", response_model=KeyConfigResponse)
async def upsert_key(
    key_data: KeyConfigUpsert,
    admin: User = Depends(get_admin_user),
    config_service: ConfigService = Depends(get_config_service),
    db: AsyncSession = Depends(get_db)
):
    """Create a key, or update it when ``id`` is given."""
    values = key_data.model_dump(exclude={"id"})
    values["key_model"] = key_data.key_model.value
    values["status"] = key_data.status.value
    try:
        row = await config_service.upsert_key(db, values, key_data.id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    logger.info("Admin %s saved key %s", admin.id, row.id)
    return row


@router.put("/keys/{key_id}/status", response_model=KeyConfigResponse)
async def update_key_status(
    key_id: int,
    status_data: KeyStatusUpdate,
    admin: User = Depends(get_admin_user),
    config_service: ConfigService = Depends(get_config_service),
    db: AsyncSession = Depends(get_db)
):
    """Enable or disable a key."""
    try:
        return await config_service.set_key_status(db, key_id, status_data.status)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )


@router.get("/config", response_model=SiteConfigSchema)
async def get_site_config(
    admin: User = Depends(get_admin_user),
    config_service: ConfigService = Depends(get_config_service)
):
    return await config_service.get_config()


@router.put("/config", response_model=SiteConfigSchema)
async def update_site_config(
    config: SiteConfigSchema,
    admin: User = Depends(get_admin_user),
    config_service: ConfigService = Depends(get_config_service),
    db: AsyncSession = Depends(get_db)
):
    """Replace the site configuration. Cached config and keys are dropped."""
    saved = await config_service.save_config(db, config)
    logger.info("Admin %s updated site config", admin.id)
    return saved
