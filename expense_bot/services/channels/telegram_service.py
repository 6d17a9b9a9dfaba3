from typing import Optional, Sequence

import httpx

from expense_bot.logging_config import get_logger
from expense_bot.schemas.events import Button, ButtonEvent, ChannelEvent, MediaEvent, MediaKind, TextEvent
from expense_bot.schemas.telegram import TelegramUpdate
from expense_bot.services.channels.base import MAX_QUICK_BUTTONS, ChannelAdapter

logger = get_logger("telegram_service")

MAX_MESSAGE_LENGTH = 4096


def build_inline_keyboard(rows: Sequence[Sequence[Button]]) -> dict:
    """Build inline keyboard markup from rows of buttons."""
    return {
        "inline_keyboard": [
            [{"text": button.title, "callback_data": button.data} for button in row] for row in rows if row
        ]
    }


class TelegramService(ChannelAdapter):
    """Telegram Bot API channel."""

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    name = "telegram"
    default_payment_method = "Telegram"
    supports_inline_keyboard = True
    requires_ack = True

    def __init__(self, bot_token: Optional[str], enabled: bool = True, timeout_seconds: float = 30.0):
        self.bot_token = bot_token
        self._enabled = enabled and bool(bot_token)
        self.timeout_seconds = timeout_seconds
        self.base_url = self.BASE_URL.format(token=bot_token or "")

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        if not self.enabled:
            logger.warning(f"Telegram {method} skipped: bot is not configured")
            return {"ok": False, "error": "not_configured"}

        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                if files:
                    response = await client.post(url, data=data or {}, files=files)
                else:
                    response = await client.post(url, json=data or {})
                result = response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "error": str(e)}

        if not result.get("ok"):
            logger.warning(
                "Telegram API call rejected",
                extra={"context": {"method": method, "description": result.get("description")}},
            )
        return result

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = "Markdown",
    ) -> dict:
        """Send message to Telegram chat."""
        data = {"chat_id": chat_id, "text": text[:MAX_MESSAGE_LENGTH]}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup

        result = await self._make_request("sendMessage", data)
        # Names typed by users can break Markdown entities; resend as plain text.
        if not result.get("ok") and parse_mode and "parse entities" in str(result.get("description", "")):
            data.pop("parse_mode")
            result = await self._make_request("sendMessage", data)
        return result

    async def send_text(self, chat_id: str, text: str, keyboard: Optional[list[list[Button]]] = None) -> bool:
        reply_markup = build_inline_keyboard(keyboard) if keyboard else None
        result = await self.send_message(chat_id, text, reply_markup=reply_markup)
        return bool(result.get("ok"))

    async def send_buttons(self, chat_id: str, body: str, buttons: Sequence[Button]) -> bool:
        return await self.send_text(chat_id, body, keyboard=[[button] for button in buttons[:MAX_QUICK_BUTTONS]])

    async def send_list(
        self,
        chat_id: str,
        body: str,
        button_label: str,
        sections: Sequence[tuple[str, Sequence[Button]]],
    ) -> bool:
        rows = [[button] for _, buttons in sections for button in buttons]
        return await self.send_text(chat_id, body, keyboard=rows)

    async def send_document(
        self,
        chat_id: str,
        filename: str,
        content: bytes,
        caption: Optional[str] = None,
        mime_type: str = "application/octet-stream",
    ) -> bool:
        """Upload a document to Telegram chat."""
        data = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = caption
        result = await self._make_request("sendDocument", data=data, files={"document": (filename, content, mime_type)})
        return bool(result.get("ok"))

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> dict:
        data = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        return await self._make_request("answerCallbackQuery", data)

    async def acknowledge_button(self, callback_id: Optional[str]) -> bool:
        if not callback_id:
            return False
        result = await self.answer_callback_query(callback_id)
        return bool(result.get("ok"))

    async def download_media(self, binary_ref: str) -> Optional[bytes]:
        """Resolve a file_id with getFile and download its content."""
        result = await self._make_request("getFile", {"file_id": binary_ref})
        file_path = (result.get("result") or {}).get("file_path") if result.get("ok") else None
        if not file_path:
            logger.warning(f"Telegram getFile failed for {binary_ref}")
            return None

        url = self.FILE_URL.format(token=self.bot_token, path=file_path)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(url)
        except Exception as e:
            logger.error(f"Telegram file download error: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"Telegram file download status {response.status_code}")
            return None
        return response.content

    def normalize_inbound(self, update: TelegramUpdate) -> Optional[ChannelEvent]:
        """Map an update to a channel event; None for updates the bot ignores."""
        if update.callback_query:
            query = update.callback_query
            chat_id = query.message.chat.id if query.message else query.from_user.id
            return ButtonEvent(chat_id=str(chat_id), data=query.data or "", callback_id=query.id)

        message = update.message
        if message is None:
            return None
        if message.from_user and message.from_user.is_bot:
            return None

        chat_id = str(message.chat.id)
        if message.text:
            return TextEvent(chat_id=chat_id, text=message.text)
        if message.voice:
            return MediaEvent(
                chat_id=chat_id,
                kind=MediaKind.VOICE,
                binary_ref=message.voice.file_id,
                mime_type=message.voice.mime_type or "audio/ogg",
            )
        if message.audio:
            return MediaEvent(
                chat_id=chat_id,
                kind=MediaKind.VOICE,
                binary_ref=message.audio.file_id,
                mime_type=message.audio.mime_type or "audio/mpeg",
            )
        if message.photo:
            largest = max(message.photo, key=lambda size: size.width * size.height)
            return MediaEvent(chat_id=chat_id, kind=MediaKind.IMAGE, binary_ref=largest.file_id, mime_type="image/jpeg")
        if message.document and (message.document.mime_type or "").startswith("image/"):
            return MediaEvent(
                chat_id=chat_id,
                kind=MediaKind.IMAGE,
                binary_ref=message.document.file_id,
                mime_type=message.document.mime_type,
            )
        return None
