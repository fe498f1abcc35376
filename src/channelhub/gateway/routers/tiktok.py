"""TikTok for Business webhook router."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, status

from channelhub.core.domain import ChannelType

from ..dependencies import DispatcherDep, RegistryDep, SettingsDep
from ..handling import dispatch_payload, read_verified_json

router = APIRouter(prefix="/webhooks/tiktok", tags=["tiktok"])


@router.post("", status_code=status.HTTP_200_OK)
async def tiktok_webhook(
    request: Request,
    settings: SettingsDep,
    registry: RegistryDep,
    dispatcher: DispatcherDep,
) -> dict[str, Any]:
    payload = await read_verified_json(
        request,
        registry.get(ChannelType.TIKTOK),
        settings.tiktok.webhook_secret,
        platform="tiktok",
    )
    return await dispatch_payload(dispatcher, ChannelType.TIKTOK, payload)
