import asyncio
import base64
import json
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from expense_bot.logging_config import get_logger
from expense_bot.schemas.intent import clean_amount
from expense_bot.services import result as codes
from expense_bot.services.llm.base import LLMProvider
from expense_bot.services.result import Result

logger = get_logger("media_service")

RECEIPT_PROMPT = """Read this receipt photo. Return one JSON object:
{"amount": <total paid as a number>, "merchant": "<store name>", "category": "<spending category>",
 "date": "<YYYY-MM-DD or null>", "items": ["<line item>", ...], "confidence": <0..1, how sure you are of the total>}
Use the grand total, not a subtotal. If the image is not a receipt, return {"amount": null, "confidence": 0}."""

AUDIO_EXTENSIONS = {
    "audio/ogg": "voice.ogg",
    "audio/mpeg": "voice.mp3",
    "audio/mp4": "voice.m4a",
    "audio/aac": "voice.aac",
    "audio/amr": "voice.amr",
    "audio/wav": "voice.wav",
}


class ReceiptDraft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: Optional[float] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    date: Optional[str] = None
    items: list[str] = []
    confidence: float = 0.0

    @field_validator("amount", mode="before")
    @classmethod
    def _storable_amount(cls, value):
        if value is None or isinstance(value, bool):
            return None
        try:
            amount = float(str(value).replace(",", ""))
        except ValueError:
            return None
        return clean_amount(amount)

    @field_validator("items", mode="before")
    @classmethod
    def _stringify_items(cls, value):
        if not isinstance(value, list):
            return []
        return [str(item) if not isinstance(item, dict) else str(item.get("name", item)) for item in value]

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            return min(max(float(value), 0.0), 1.0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def description(self) -> str:
        if self.merchant and self.items:
            return f"{self.merchant}: {', '.join(self.items[:3])}"
        return self.merchant or (", ".join(self.items[:3]) if self.items else "Receipt")


class MediaService:
    """Voice transcription and receipt scanning with provider fallback."""

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        timeout_seconds: float = 45.0,
        min_confidence: float = 0.5,
    ):
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds
        self.min_confidence = min_confidence

    def transcribe(self, audio_bytes: bytes, mime_type: Optional[str] = None) -> Result[str]:
        if not self.providers:
            return Result.failure("No transcription provider configured", codes.NO_PROVIDER)

        base_mime = (mime_type or "audio/ogg").split(";")[0].strip()
        filename = AUDIO_EXTENSIONS.get(base_mime, "voice.ogg")
        for provider in self.providers:
            try:
                transcript = provider.transcribe_audio(
                    audio_bytes=audio_bytes,
                    filename=filename,
                    mime_type=base_mime,
                    timeout_seconds=self.timeout_seconds,
                )
            except Exception as exc:
                logger.warning(
                    "Transcription provider failed",
                    extra={"context": {"provider": provider.name, "error": str(exc)}},
                )
                continue
            if transcript:
                logger.info(
                    "Voice transcribed",
                    extra={"context": {"provider": provider.name, "chars": len(transcript)}},
                )
                return Result.success(transcript)

        return Result.failure("Could not transcribe the voice message", codes.EMPTY_RESULT)

    def scan_receipt(self, image_bytes: bytes, mime_type: Optional[str] = None) -> Result[ReceiptDraft]:
        if not self.providers:
            return Result.failure("No vision provider configured", codes.NO_PROVIDER)

        data_uri = f"data:{mime_type or 'image/jpeg'};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": RECEIPT_PROMPT},
                    {"type": "image_url", "image_url": {"url": data_uri}},
                ],
            }
        ]

        draft = None
        for provider in self.providers:
            try:
                response = provider.generate(
                    messages,
                    temperature=0.0,
                    max_tokens=800,
                    timeout_seconds=self.timeout_seconds,
                    json_mode=True,
                )
                draft = ReceiptDraft.model_validate(json.loads(response.content))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "Receipt output unparseable",
                    extra={"context": {"provider": provider.name, "error": str(exc)}},
                )
                continue
            except Exception as exc:
                logger.warning(
                    "Receipt provider failed",
                    extra={"context": {"provider": provider.name, "error": str(exc)}},
                )
                continue
            break

        if draft is None:
            return Result.failure("Could not read the receipt", codes.PROVIDER_FAILED)
        if draft.amount is None:
            return Result.failure("No total found on the receipt", codes.NO_AMOUNT)
        if draft.confidence < self.min_confidence:
            return Result.failure(f"Receipt confidence {draft.confidence:.2f} too low", codes.LOW_CONFIDENCE)
        return Result.success(draft)

    async def _run(self, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout_seconds * 2)
        except asyncio.TimeoutError:
            logger.warning(f"{func.__name__} timed out")
            return Result.failure("Timed out", codes.PROVIDER_FAILED)

    async def transcribe_async(self, audio_bytes: bytes, mime_type: Optional[str] = None) -> Result[str]:
        return await self._run(self.transcribe, audio_bytes, mime_type)

    async def scan_receipt_async(self, image_bytes: bytes, mime_type: Optional[str] = None) -> Result[ReceiptDraft]:
        return await self._run(self.scan_receipt, image_bytes, mime_type)
