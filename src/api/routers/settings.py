"""Camera settings endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
import structlog

from src.services.config_store import ConfigStore
from src.utils.dependencies import get_config_store
from src.utils.errors import success_response


logger = structlog.get_logger().bind(component="settings_api")
router = APIRouter()


@router.get("")
async def get_settings(config_store: ConfigStore = Depends(get_config_store)):
    """Every camera option, camelCase."""
    return config_store.extended_view()


@router.put("")
async def update_settings(
    changes: Dict[str, Any] = Body(..., description="Options to change, camelCase or snake_case"),
    config_store: ConfigStore = Depends(get_config_store)
):
    """Validate and persist camera options."""
    await config_store.update(changes)
    logger.info("Settings updated via API", keys=sorted(changes))
    return success_response(config_store.extended_view(), message="Configuration saved!")


@router.post("/reset")
async def reset_settings(config_store: ConfigStore = Depends(get_config_store)):
    """Restore every camera option to its default."""
    await config_store.reset_to_defaults()
    return success_response(config_store.extended_view(), message="Configuration reset to defaults.")
