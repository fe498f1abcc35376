"""Instagram and Facebook Messenger webhook router."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import PlainTextResponse

from channelhub.core.domain import ChannelType

from ..dependencies import DispatcherDep, RegistryDep, SettingsDep
from ..dispatch import META_OBJECTS
from ..handling import dispatch_payload, read_verified_json, subscription_challenge

router = APIRouter(prefix="/webhooks/meta", tags=["meta"])


@router.get("", response_class=PlainTextResponse)
async def meta_subscription(
    settings: SettingsDep,
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    return subscription_challenge(
        mode, token, challenge, settings.meta.verify_token, platform="meta"
    )


@router.post("", status_code=status.HTTP_200_OK)
async def meta_webhook(
    request: Request,
    settings: SettingsDep,
    registry: RegistryDep,
    dispatcher: DispatcherDep,
) -> dict[str, Any]:
    payload = await read_verified_json(
        request,
        registry.get(ChannelType.FACEBOOK),
        settings.meta.webhook_secret,
        platform="meta",
    )
    channel_type = (
        META_OBJECTS.get(str(payload.get("object"))) if isinstance(payload, dict) else None
    )
    if channel_type is None:
        return {"status": "ignored"}
    return await dispatch_payload(dispatcher, channel_type, payload)
