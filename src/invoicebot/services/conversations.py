"""
Conversation store for the chat invoice wizard.

Holds one row per (organization, phone). A turn locks the row with
SELECT ... FOR UPDATE for its whole transaction, which serializes messages
from the same sender. The row is created lazily on the first message and
never deleted.
"""

from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import dialect_insert
from ..models import Conversation, ProcessedMessage, utcnow
from ..schemas import (
    ConversationContext,
    ConversationState,
    IdleContext,
    dump_context,
    load_context,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)


async def mark_processed(session: AsyncSession, message_id: str) -> bool:
    """
    Insert the dedup marker for ``message_id``.

    Returns:
        True when the id is new, False when it was already processed.
    """
    stmt = (
        dialect_insert(session, ProcessedMessage)
        .values(message_id=message_id, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=[ProcessedMessage.message_id])
        .returning(ProcessedMessage.message_id)
    )
    inserted = (await session.execute(stmt)).scalar_one_or_none()
    if inserted is None:
        logger.info("Duplicate message ignored", extra={"message_id": message_id})
        return False
    return True


async def _select_for_update(
    session: AsyncSession, organization_id: int, phone: str
) -> Optional[Conversation]:
    result = await session.execute(
        select(Conversation)
        .where(
            Conversation.organization_id == organization_id,
            Conversation.whatsapp_phone == phone,
        )
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def lock_conversation(
    session: AsyncSession, organization_id: int, phone: str
) -> Conversation:
    """
    Return the locked conversation row, creating an idle one if missing.

    Creation uses INSERT ... ON CONFLICT DO NOTHING followed by a locking
    re-read, so two first messages racing from the same phone end up on
    the same row.
    """
    conversation = await _select_for_update(session, organization_id, phone)
    if conversation is not None:
        return conversation

    now = utcnow()
    await session.execute(
        dialect_insert(session, Conversation)
        .values(
            organization_id=organization_id,
            whatsapp_phone=phone,
            state=ConversationState.IDLE.value,
            context={},
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[Conversation.organization_id, Conversation.whatsapp_phone]
        )
    )
    conversation = await _select_for_update(session, organization_id, phone)
    if conversation is None:
        raise RuntimeError("Conversation row vanished after insert")

    logger.info(
        "Conversation created",
        extra={"organization_id": organization_id, "conversation_id": conversation.id},
    )
    return conversation


def read_context(conversation: Conversation) -> ConversationContext:
    """
    Validate the stored context into its state's variant.

    A row whose blob does not fit its state (or whose state is unknown) is
    read as idle, which restarts the wizard instead of failing every turn.
    """
    try:
        return load_context(conversation.state or ConversationState.IDLE.value, conversation.context)
    except (ValidationError, ValueError) as e:
        logger.warning(
            "Stored conversation context is invalid, treating as idle",
            extra={
                "conversation_id": conversation.id,
                "state": conversation.state,
                "error": str(e),
            },
        )
        return IdleContext()


def write_context(
    conversation: Conversation,
    context: ConversationContext,
    message_id: Optional[str],
    trigger: Optional[str] = None,
) -> None:
    """
    Store ``context`` on the (locked) row; flushed with the turn's commit.

    Clears the reserved ``timeout_at`` marker on every save.
    """
    from_state = conversation.state
    payload = dump_context(context)
    payload.pop("state", None)

    conversation.state = context.state
    conversation.context = payload
    conversation.last_message_id = message_id
    conversation.timeout_at = None
    conversation.updated_at = utcnow()

    if from_state != context.state:
        logger.info(
            "State transition",
            extra={
                "conversation_id": conversation.id,
                "from_state": from_state,
                "to_state": context.state,
                "trigger": trigger or "message",
            },
        )
