from fastapi import Depends, Request
from sqlalchemy.orm import Session

from expense_bot.database import get_db
from expense_bot.services.action_executor import ActionExecutor
from expense_bot.services.channels.base import ChannelAdapter
from expense_bot.services.dialogue_controller import DialogueController
from expense_bot.services.state_service import SqlStateStore
from expense_bot.services.storage import SqlExpenseStorage


def build_controller(request: Request, channel: ChannelAdapter, db: Session) -> DialogueController:
    """Per-request controller over the process-wide clients kept on ``app.state``."""
    state = request.app.state
    executor = ActionExecutor(
        SqlExpenseStorage(db),
        currency=state.settings.currency,
        channel_payment_labels=(state.telegram.default_payment_method, state.whatsapp.default_payment_method),
    )
    return DialogueController(
        channel=channel,
        state_store=SqlStateStore(db, ttl_minutes=state.settings.state_ttl_minutes),
        executor=executor,
        extractor=state.extractor,
        media=state.media,
        locks=state.locks,
    )


def get_telegram_controller(request: Request, db: Session = Depends(get_db)) -> DialogueController:
    return build_controller(request, request.app.state.telegram, db)


def get_whatsapp_controller(request: Request, db: Session = Depends(get_db)) -> DialogueController:
    return build_controller(request, request.app.state.whatsapp, db)
