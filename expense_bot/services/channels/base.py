from abc import ABC, abstractmethod
from typing import Optional, Sequence

from expense_bot.logging_config import get_logger
from expense_bot.schemas.events import Button, Reply
from expense_bot.services.keyboards import CANCEL, CANCEL_AI_ACTION, MENU_MAIN

logger = get_logger("channels")

# Upper bound of the quick-reply primitive on every channel.
MAX_QUICK_BUTTONS = 3


class ChannelAdapter(ABC):
    """Outbound primitives of one messaging platform.

    Every send is best-effort: failures are logged inside the adapter and reported as
    ``False``, never raised. An adapter without credentials returns ``False`` from
    every send.
    """

    name: str = "channel"
    # Label used as the payment method of expenses typed into this channel.
    default_payment_method: str = "Chat"
    # Inline keyboards render any number of rows; otherwise buttons/list fallbacks apply.
    supports_inline_keyboard: bool = False
    max_list_rows: int = 10
    # A button press must be acknowledged before replying.
    requires_ack: bool = False

    @property
    @abstractmethod
    def enabled(self) -> bool:
        pass

    @abstractmethod
    async def send_text(self, chat_id: str, text: str, keyboard: Optional[list[list[Button]]] = None) -> bool:
        pass

    @abstractmethod
    async def send_buttons(self, chat_id: str, body: str, buttons: Sequence[Button]) -> bool:
        pass

    @abstractmethod
    async def send_list(
        self,
        chat_id: str,
        body: str,
        button_label: str,
        sections: Sequence[tuple[str, Sequence[Button]]],
    ) -> bool:
        pass

    @abstractmethod
    async def send_document(
        self,
        chat_id: str,
        filename: str,
        content: bytes,
        caption: Optional[str] = None,
        mime_type: str = "application/octet-stream",
    ) -> bool:
        pass

    @abstractmethod
    async def acknowledge_button(self, callback_id: Optional[str]) -> bool:
        pass

    @abstractmethod
    async def download_media(self, binary_ref: str) -> Optional[bytes]:
        pass

    async def send_reply(self, chat_id: str, reply: Reply) -> bool:
        """Render a channel-agnostic reply with the richest primitive the channel has."""
        buttons = reply.buttons
        if not buttons:
            return await self.send_text(chat_id, reply.text)
        if self.supports_inline_keyboard:
            return await self.send_text(chat_id, reply.text, keyboard=reply.keyboard)
        if len(buttons) <= MAX_QUICK_BUTTONS:
            return await self.send_buttons(chat_id, reply.text, buttons)
        if len(buttons) > self.max_list_rows:
            logger.warning(
                "Too many options for a list, truncating",
                extra={"context": {"channel": self.name, "options": len(buttons), "limit": self.max_list_rows}},
            )
            buttons = _keep_cancel(buttons, self.max_list_rows)
        return await self.send_list(chat_id, reply.text, reply.list_label, [("Options", buttons)])


def _keep_cancel(buttons: list[Button], limit: int) -> list[Button]:
    """Truncate to ``limit`` while keeping a trailing cancel/menu option reachable."""
    tail = buttons[-1]
    if tail.data in {CANCEL, CANCEL_AI_ACTION, MENU_MAIN}:
        return buttons[: limit - 1] + [tail]
    return buttons[:limit]
