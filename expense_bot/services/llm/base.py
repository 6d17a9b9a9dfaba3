from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class ExtractionProviderError(Exception):
    """A configured provider failed: network, quota, HTTP status or unparseable output."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    ``messages`` use the chat-completions shape. A message ``content`` is either a
    string or a list of parts (``{"type": "text"}`` / ``{"type": "image_url"}`` with a
    base64 data URI), which every provider must accept.
    """

    name: str = "llm"

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    @abstractmethod
    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Transcribe a voice note to plain text."""
        pass
