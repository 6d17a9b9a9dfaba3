from expense_bot.schemas.events import (
    Button,
    ButtonEvent,
    ChannelEvent,
    Document,
    MediaEvent,
    MediaKind,
    Reply,
    TextEvent,
)
from expense_bot.schemas.intent import Action, Intent

__all__ = [
    "Action",
    "Button",
    "ButtonEvent",
    "ChannelEvent",
    "Document",
    "Intent",
    "MediaEvent",
    "MediaKind",
    "Reply",
    "TextEvent",
]
