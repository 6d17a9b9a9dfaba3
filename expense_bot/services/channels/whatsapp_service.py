import hashlib
import hmac
from typing import Optional, Sequence

import httpx

from expense_bot.logging_config import get_logger
from expense_bot.schemas.events import Button, ButtonEvent, ChannelEvent, MediaEvent, MediaKind, Reply, TextEvent
from expense_bot.schemas.whatsapp import WhatsAppMessage
from expense_bot.services.channels.base import MAX_QUICK_BUTTONS, ChannelAdapter

logger = get_logger("whatsapp_service")

MAX_TEXT_LENGTH = 4096
MAX_INTERACTIVE_BODY = 1024
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def verify_signature(raw_body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex hmac>`` of the raw body)."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])


class WhatsAppService(ChannelAdapter):
    """WhatsApp Cloud API channel."""

    GRAPH_URL = "https://graph.facebook.com/{version}"

    name = "whatsapp"
    default_payment_method = "WhatsApp"
    max_list_rows = 10

    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str = "v21.0",
        enabled: bool = True,
        timeout_seconds: float = 30.0,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self._enabled = enabled and bool(access_token) and bool(phone_number_id)
        self.timeout_seconds = timeout_seconds
        self.graph_url = self.GRAPH_URL.format(version=api_version)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _post_message(self, payload: dict) -> bool:
        if not self.enabled:
            logger.warning("WhatsApp send skipped: channel is not configured")
            return False

        url = f"{self.graph_url}/{self.phone_number_id}/messages"
        body = {"messaging_product": "whatsapp", **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, headers=self._headers, json=body)
        except Exception as e:
            logger.error(f"Error sending WhatsApp message: {e}", extra={"context": {"type": payload.get("type")}})
            return False

        if response.status_code != 200:
            logger.warning(
                "WhatsApp API rejected message",
                extra={"context": {"status": response.status_code, "body": response.text[:200]}},
            )
            return False
        return True

    async def send_text(self, chat_id: str, text: str, keyboard: Optional[list[list[Button]]] = None) -> bool:
        if keyboard:
            return await self.send_reply(chat_id, Reply(text=text, keyboard=keyboard))
        return await self._post_message(
            {"to": chat_id, "type": "text", "text": {"body": _clip(text, MAX_TEXT_LENGTH), "preview_url": False}}
        )

    async def send_buttons(self, chat_id: str, body: str, buttons: Sequence[Button]) -> bool:
        if len(buttons) > MAX_QUICK_BUTTONS:
            logger.warning(f"WhatsApp allows {MAX_QUICK_BUTTONS} reply buttons, dropping {len(buttons) - MAX_QUICK_BUTTONS}")
        interactive = {
            "type": "button",
            "body": {"text": _clip(body, MAX_INTERACTIVE_BODY)},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button.data, "title": _clip(button.title, MAX_BUTTON_TITLE)}}
                    for button in buttons[:MAX_QUICK_BUTTONS]
                ]
            },
        }
        return await self._post_message({"to": chat_id, "type": "interactive", "interactive": interactive})

    async def send_list(
        self,
        chat_id: str,
        body: str,
        button_label: str,
        sections: Sequence[tuple[str, Sequence[Button]]],
    ) -> bool:
        interactive = {
            "type": "list",
            "body": {"text": _clip(body, MAX_INTERACTIVE_BODY)},
            "action": {
                "button": _clip(button_label, MAX_BUTTON_TITLE),
                "sections": [
                    {
                        "title": _clip(title, MAX_ROW_TITLE),
                        "rows": [{"id": row.data, "title": _clip(row.title, MAX_ROW_TITLE)} for row in rows],
                    }
                    for title, rows in sections
                ],
            },
        }
        return await self._post_message({"to": chat_id, "type": "interactive", "interactive": interactive})

    async def _upload_media(self, filename: str, content: bytes, mime_type: str) -> Optional[str]:
        url = f"{self.graph_url}/{self.phone_number_id}/media"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    url,
                    headers=self._headers,
                    data={"messaging_product": "whatsapp", "type": mime_type},
                    files={"file": (filename, content, mime_type)},
                )
        except Exception as e:
            logger.error(f"WhatsApp media upload error: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"WhatsApp media upload status {response.status_code}: {response.text[:200]}")
            return None
        return response.json().get("id")

    async def send_document(
        self,
        chat_id: str,
        filename: str,
        content: bytes,
        caption: Optional[str] = None,
        mime_type: str = "application/octet-stream",
    ) -> bool:
        if not self.enabled:
            logger.warning("WhatsApp document skipped: channel is not configured")
            return False
        media_id = await self._upload_media(filename, content, mime_type)
        if not media_id:
            return False
        document = {"id": media_id, "filename": filename}
        if caption:
            document["caption"] = caption
        return await self._post_message({"to": chat_id, "type": "document", "document": document})

    async def acknowledge_button(self, callback_id: Optional[str]) -> bool:
        # Interactive replies arrive as ordinary messages; nothing to acknowledge.
        return True

    async def mark_as_read(self, message_id: str) -> bool:
        return await self._post_message({"status": "read", "message_id": message_id})

    async def download_media(self, binary_ref: str) -> Optional[bytes]:
        """Resolve a media id to its short-lived URL and download it."""
        if not self.enabled:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                meta = await client.get(f"{self.graph_url}/{binary_ref}", headers=self._headers)
                if meta.status_code != 200:
                    logger.warning(f"WhatsApp media lookup status {meta.status_code}")
                    return None
                media_url = meta.json().get("url")
                if not media_url:
                    return None
                response = await client.get(media_url, headers=self._headers)
        except Exception as e:
            logger.error(f"WhatsApp media download error: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"WhatsApp media download status {response.status_code}")
            return None
        return response.content

    def normalize_inbound(self, message: WhatsAppMessage) -> Optional[ChannelEvent]:
        chat_id = message.from_number
        if message.type == "text" and message.text:
            return TextEvent(chat_id=chat_id, text=message.text.body)
        if message.type == "interactive" and message.interactive:
            reply = message.interactive.button_reply or message.interactive.list_reply
            if reply:
                return ButtonEvent(chat_id=chat_id, data=reply.id)
        if message.type == "button" and message.button:
            return ButtonEvent(chat_id=chat_id, data=message.button.payload or message.button.text or "")
        audio = message.audio or message.voice
        if message.type in ("audio", "voice") and audio:
            return MediaEvent(chat_id=chat_id, kind=MediaKind.VOICE, binary_ref=audio.id, mime_type=audio.mime_type)
        if message.type == "image" and message.image:
            return MediaEvent(
                chat_id=chat_id, kind=MediaKind.IMAGE, binary_ref=message.image.id, mime_type=message.image.mime_type
            )
        return None
