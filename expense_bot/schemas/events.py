from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class MediaKind(str, Enum):
    VOICE = "voice"
    IMAGE = "image"


@dataclass(frozen=True)
class TextEvent:
    chat_id: str
    text: str


@dataclass(frozen=True)
class ButtonEvent:
    chat_id: str
    data: str
    callback_id: Optional[str] = None  # set only on channels that need an acknowledgement


@dataclass(frozen=True)
class MediaEvent:
    chat_id: str
    kind: MediaKind
    binary_ref: str
    mime_type: Optional[str] = None


ChannelEvent = Union[TextEvent, ButtonEvent, MediaEvent]


@dataclass(frozen=True)
class Button:
    title: str
    data: str


@dataclass
class Reply:
    """Channel-agnostic outbound message: text plus optional rows of buttons."""

    text: str
    keyboard: list[list[Button]] = field(default_factory=list)
    list_label: str = "Choose"

    @property
    def buttons(self) -> list[Button]:
        return [button for row in self.keyboard for button in row]


@dataclass
class Document:
    filename: str
    content: bytes
    caption: Optional[str] = None
    mime_type: str = "application/json"
