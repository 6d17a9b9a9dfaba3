import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from expense_bot.logging_config import get_logger
from expense_bot.routers.dependencies import get_whatsapp_controller
from expense_bot.schemas.webhook import WebhookResponse
from expense_bot.schemas.whatsapp import WhatsAppWebhookPayload
from expense_bot.services.channels.whatsapp_service import verify_signature
from expense_bot.services.dialogue_controller import DialogueController

logger = get_logger("whatsapp_webhook")

router = APIRouter()


@router.get("/whatsapp/webhook", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(
    request: Request,
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the verify token matches."""
    expected = request.app.state.settings.whatsapp_verify_token
    if (
        hub_mode == "subscribe"
        and expected
        and hub_verify_token
        and hmac.compare_digest(expected, hub_verify_token)
    ):
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(hub_challenge or "", status_code=200)

    logger.warning("WhatsApp webhook verification failed", extra={"context": {"mode": hub_mode}})
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/whatsapp/webhook", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None),
    controller: DialogueController = Depends(get_whatsapp_controller),
):
    """
    Handle WhatsApp Cloud API notifications:
    - Messages (text, button/list replies, audio, image) -> dialogue controller
    - Status callbacks -> ignored
    """
    raw_body = await request.body()
    app_secret = request.app.state.settings.whatsapp_app_secret
    if app_secret and not verify_signature(raw_body, x_hub_signature_256, app_secret):
        logger.warning("WhatsApp signature verification failed")
        raise HTTPException(status_code=403, detail="Invalid signature")

    whatsapp = request.app.state.whatsapp
    if not whatsapp.enabled:
        return WebhookResponse(success=False, message="WhatsApp bot is not configured")

    try:
        payload = WhatsAppWebhookPayload(**json.loads(raw_body.decode("utf-8", errors="replace")))

        handled = 0
        for message in payload.iter_messages():
            if message.id:
                await whatsapp.mark_as_read(message.id)
            event = whatsapp.normalize_inbound(message)
            if event is None:
                logger.debug(f"Skipping unsupported WhatsApp message type {message.type}")
                continue
            await controller.handle(event)
            handled += 1

        if not handled:
            return WebhookResponse(success=True, message="No actionable content")
        return WebhookResponse(success=True, message=f"Processed {handled} message(s)")

    except Exception as e:
        logger.error(f"WhatsApp webhook error: {e}", exc_info=True)
        return WebhookResponse(success=False, message=str(e))
