import base64
from typing import List, Optional

import httpx

from expense_bot.logging_config import get_logger
from expense_bot.services.llm.base import ExtractionProviderError, LLMProvider, LLMResponse

logger = get_logger("llm.gemini")


def _split_data_uri(uri: str) -> tuple[str, str]:
    """Return (mime_type, base64 payload) for a ``data:<mime>;base64,<data>`` URI."""
    header, _, payload = uri.partition(",")
    mime_type = header[len("data:"):].split(";")[0] if header.startswith("data:") else "application/octet-stream"
    return mime_type or "application/octet-stream", payload


def _to_parts(content) -> list[dict]:
    if isinstance(content, str):
        return [{"text": content}]
    parts = []
    for part in content or []:
        if part.get("type") == "text":
            parts.append({"text": part.get("text", "")})
        elif part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url", "")
            mime_type, payload = _split_data_uri(url)
            parts.append({"inline_data": {"mime_type": mime_type, "data": payload}})
    return parts


class GeminiProvider(LLMProvider):
    """Google Gemini provider over the generateContent REST endpoint."""

    name = "gemini"

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(self, api_key: str, default_model: str = "gemini-2.5-flash"):
        self.api_key = api_key
        self.default_model = default_model

    def _build_payload(self, messages: List[dict], temperature: float, max_tokens: int, json_mode: bool) -> dict:
        system_parts: list[dict] = []
        contents: list[dict] = []
        for message in messages:
            role = message.get("role", "user")
            parts = _to_parts(message.get("content"))
            if role == "system":
                system_parts.extend(parts)
            else:
                contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})

        generation_config = {"temperature": temperature, "maxOutputTokens": max_tokens}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    def _post(self, model: str, payload: dict, timeout: float) -> dict:
        url = self.BASE_URL.format(model=model)
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    url,
                    headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise ExtractionProviderError(self.name, f"request failed: {e}") from e

        logger.debug(f"Gemini response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"Gemini error: {response.text}")
            raise ExtractionProviderError(self.name, f"API error {response.status_code}")
        return response.json()

    @staticmethod
    def _extract_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        data = self._post(model, self._build_payload(messages, temperature, max_tokens, json_mode), timeout)
        content = self._extract_text(data)
        logger.debug(f"Gemini content: {content[:100] if content else 'EMPTY'}")
        return LLMResponse(content=content, model=model, usage=data.get("usageMetadata"))

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": "Transcribe this voice note verbatim. Return only the transcript."},
                        {
                            "inline_data": {
                                "mime_type": mime_type or "audio/ogg",
                                "data": base64.b64encode(audio_bytes).decode("ascii"),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.0},
        }
        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        transcript = self._extract_text(self._post(self.default_model, payload, timeout)).strip()
        if not transcript:
            logger.warning("Gemini transcription returned empty text")
        return transcript
