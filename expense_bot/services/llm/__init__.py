from expense_bot.services.llm.base import ExtractionProviderError, LLMProvider, LLMResponse
from expense_bot.services.llm.gemini_provider import GeminiProvider
from expense_bot.services.llm.openai_provider import OpenAIProvider

__all__ = ["ExtractionProviderError", "GeminiProvider", "LLMProvider", "LLMResponse", "OpenAIProvider"]
