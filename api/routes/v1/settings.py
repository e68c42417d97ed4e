"""
api/routes/v1/settings.py -- Instance settings administration.

Routes:
  GET  /settings               -- every known key, resolved     (moderation:view)
  GET  /settings/{key}         -- one key, resolved             (moderation:view)
  POST /settings               -- write one key                 (moderation:view)
  POST /settings/cache/clear   -- drop cached settings          (moderation:view)

Only keys listed in instance.defaults.SETTING_KEYS are accepted. A known key
with no stored value and no default resolves to null.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.errors import api_error, error_boundary
from api.models import SettingResponse, SettingsCacheClearResponse, SettingsResponse, SettingUpdate
from auth.dependencies import require_permission
from auth.models import User
from core.errors import SETTING_ERROR_CODES
from instance.service import InstanceSettings

logger = logging.getLogger("cosmos.settings")

router = APIRouter()


@router.get("/settings", response_model=SettingsResponse)
async def list_settings(
    request: Request,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> SettingsResponse:
    service: InstanceSettings = request.app.state.instance_settings
    with error_boundary(SETTING_ERROR_CODES["SETTING_LIST_FAILED"], endpoint="list-settings"):
        return SettingsResponse(settings=await service.get_all())


@router.get("/settings/{key}", response_model=SettingResponse)
async def get_setting(
    request: Request,
    key: str,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> SettingResponse:
    service: InstanceSettings = request.app.state.instance_settings
    if not service.is_known(key):
        raise api_error("NOT_FOUND", SETTING_ERROR_CODES["UNKNOWN_SETTING"])
    with error_boundary(SETTING_ERROR_CODES["SETTING_LIST_FAILED"], endpoint="get-setting", key=key):
        return SettingResponse(key=key, value=await service.get(key))


@router.post("/settings", response_model=SettingResponse)
async def update_setting(
    request: Request,
    body: SettingUpdate,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> SettingResponse:
    service: InstanceSettings = request.app.state.instance_settings
    if not service.is_known(body.key):
        raise api_error("BAD_REQUEST", SETTING_ERROR_CODES["UNKNOWN_SETTING"])
    with error_boundary(SETTING_ERROR_CODES["SETTING_UPDATE_FAILED"], endpoint="update-setting", key=body.key):
        value = await service.set(body.key, body.value)
    logger.info("Setting %s changed by %s", body.key, current_user.username)
    return SettingResponse(key=body.key, value=value)


@router.post("/settings/cache/clear", response_model=SettingsCacheClearResponse)
async def clear_settings_cache(
    request: Request,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> SettingsCacheClearResponse:
    service: InstanceSettings = request.app.state.instance_settings
    with error_boundary(SETTING_ERROR_CODES["SETTING_UPDATE_FAILED"], endpoint="clear-settings-cache"):
        cleared = await service.clear_cache()
    return SettingsCacheClearResponse(cleared=cleared)
