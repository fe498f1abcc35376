"""WhatsApp Cloud webhook router."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import PlainTextResponse

from channelhub.core.domain import ChannelType

from ..dependencies import DispatcherDep, RegistryDep, SettingsDep
from ..handling import dispatch_payload, read_verified_json, subscription_challenge

router = APIRouter(prefix="/webhooks/whatsapp", tags=["whatsapp"])


@router.get("", response_class=PlainTextResponse)
async def whatsapp_subscription(
    settings: SettingsDep,
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    return subscription_challenge(
        mode, token, challenge, settings.whatsapp.verify_token, platform="whatsapp"
    )


@router.post("", status_code=status.HTTP_200_OK)
async def whatsapp_webhook(
    request: Request,
    settings: SettingsDep,
    registry: RegistryDep,
    dispatcher: DispatcherDep,
) -> dict[str, Any]:
    payload = await read_verified_json(
        request,
        registry.get(ChannelType.WHATSAPP),
        settings.whatsapp.webhook_secret,
        platform="whatsapp",
    )
    return await dispatch_payload(dispatcher, ChannelType.WHATSAPP, payload)
