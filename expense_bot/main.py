from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from expense_bot.config import Settings, settings
from expense_bot.logging_config import get_logger, setup_logging
from expense_bot.routers import telegram_webhook, whatsapp_webhook
from expense_bot.services.channels.telegram_service import TelegramService
from expense_bot.services.channels.whatsapp_service import WhatsAppService
from expense_bot.services.chat_locks import ChatLocks
from expense_bot.services.intent_service import IntentExtractor
from expense_bot.services.llm import GeminiProvider, LLMProvider, OpenAIProvider
from expense_bot.services.media_service import MediaService

setup_logging(settings.log_level)

logger = get_logger("main")


def build_providers(config: Settings) -> list[LLMProvider]:
    """Configured LLM providers in the configured priority order."""
    providers: list[LLMProvider] = []
    for name in config.provider_order:
        if name == "openai":
            if config.openai_api_key:
                providers.append(
                    OpenAIProvider(
                        config.openai_api_key,
                        default_model=config.openai_model,
                        transcription_model=config.openai_transcription_model,
                    )
                )
        elif name == "gemini":
            if config.gemini_api_key:
                providers.append(GeminiProvider(config.gemini_api_key, default_model=config.gemini_model))
        else:
            logger.warning(f"Unknown intent provider '{name}' ignored")

    if not providers:
        logger.warning("No LLM provider configured; free text will resolve to 'unknown'")
    return providers


def build_services(app: FastAPI, config: Settings) -> None:
    """Construct the process-wide clients once and keep them on ``app.state``."""
    providers = build_providers(config)
    app.state.settings = config
    app.state.telegram = TelegramService(config.telegram_bot_token, enabled=config.telegram_enabled)
    app.state.whatsapp = WhatsAppService(
        config.whatsapp_access_token,
        config.whatsapp_phone_number_id,
        api_version=config.whatsapp_api_version,
        enabled=config.whatsapp_enabled,
    )
    app.state.extractor = IntentExtractor(
        providers, timeout_seconds=config.intent_timeout_seconds, currency=config.currency
    )
    app.state.media = MediaService(
        providers, timeout_seconds=config.media_timeout_seconds, min_confidence=config.receipt_min_confidence
    )
    app.state.locks = ChatLocks()
    logger.info(
        "Services configured",
        extra={
            "context": {
                "providers": [provider.name for provider in providers],
                "telegram": app.state.telegram.enabled,
                "whatsapp": app.state.whatsapp.enabled,
            }
        },
    )


def create_app(config: Settings = settings) -> FastAPI:
    app = FastAPI(
        title="Expense Bot",
        description="Telegram and WhatsApp bots for the expense tracker",
        version="0.1.0",
    )

    cors_origins = [origin.strip() for origin in config.cors_allow_origins.split(",") if origin.strip()]
    if not cors_origins:
        cors_origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(telegram_webhook.router)
    app.include_router(whatsapp_webhook.router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "telegram": app.state.telegram.enabled,
            "whatsapp": app.state.whatsapp.enabled,
            "intent_providers": len(app.state.extractor.providers),
        }

    build_services(app, config)
    return app


app = create_app()
