import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from expense_bot.logging_config import get_logger
from expense_bot.routers.dependencies import get_telegram_controller
from expense_bot.schemas.telegram import TelegramUpdate
from expense_bot.schemas.webhook import WebhookResponse
from expense_bot.services.dialogue_controller import DialogueController

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = raw.decode(enc, errors="replace")
            return json.loads(decoded)
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def check_secret_token(expected: Optional[str], received: Optional[str]) -> None:
    """401 when the secret header is missing, 403 when it does not match."""
    if not expected:
        return
    if not received:
        raise HTTPException(status_code=401, detail="Missing secret token")
    if not hmac.compare_digest(expected, received):
        raise HTTPException(status_code=403, detail="Invalid secret token")


@router.post("/telegram/webhook", response_model=WebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    controller: DialogueController = Depends(get_telegram_controller),
):
    """
    Handle Telegram webhook updates:
    - Text, voice and photo messages -> dialogue controller
    - Callback queries (button clicks) -> dialogue controller, acknowledged first
    """
    settings = request.app.state.settings
    check_secret_token(settings.telegram_webhook_secret, x_telegram_bot_api_secret_token)

    telegram = request.app.state.telegram
    if not telegram.enabled:
        return WebhookResponse(success=False, message="Telegram bot is not configured")

    try:
        body = await parse_telegram_update(request)
        if body is None:
            return WebhookResponse(success=False, message="Invalid telegram payload")

        update = TelegramUpdate(**body)
        event = telegram.normalize_inbound(update)
        if event is None:
            return WebhookResponse(success=True, message="No actionable content")

        allowed = settings.allowed_telegram_chats
        if allowed and event.chat_id not in allowed:
            logger.warning("Ignoring update from chat outside allow-list", extra={"context": {"chat_id": event.chat_id}})
            return WebhookResponse(success=True, message="Chat not allowed")

        await controller.handle(event)
        return WebhookResponse(success=True, message="Processed")

    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return WebhookResponse(success=False, message=str(e))
