import logging
from abc import ABC, abstractmethod
from typing import List

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from firmassist.core import models
from firmassist.ai_feature.scope import Principal
from firmassist.ai_feature.turns import ModelTurn, TurnRole, UserTurn


logger = logging.getLogger(__name__)

# Only plain text turns survive a run
PERSISTED_ROLES = (TurnRole.USER, TurnRole.MODEL)


class ConversationChannel(ABC):
    """Append-only history of one principal's assistant conversation."""

    @abstractmethod
    async def ensure_channel(self, principal: Principal) -> int:
        """Return the principal's channel id, creating the channel if needed."""

    @abstractmethod
    async def append_turn(self, channel_id: int, turn) -> None: ...

    @abstractmethod
    async def recent_turns(self, channel_id: int, limit: int) -> list:
        """Last ``limit`` turns, oldest first."""

    @abstractmethod
    async def all_turns(self, channel_id: int) -> List[models.AssistantMessage]: ...

    @abstractmethod
    async def clear(self, channel_id: int) -> int: ...


class SqlConversationChannel(ConversationChannel):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def ensure_channel(self, principal: Principal) -> int:
        query = select(models.AssistantChannel.id).where(
            models.AssistantChannel.user_id == principal.id
        )
        async with self.session_factory() as db:
            channel_id = await db.scalar(query)
            if channel_id is not None:
                return channel_id

            channel = models.AssistantChannel(
                user_id=principal.id, firm_id=principal.firm_id
            )
            db.add(channel)
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent request created it first
                await db.rollback()
                return await db.scalar(query)
            await db.refresh(channel)
            logger.info(f"[User {principal.id}] Created assistant channel {channel.id}")
            return channel.id

    async def append_turn(self, channel_id: int, turn) -> None:
        if turn.role not in PERSISTED_ROLES:
            raise ValueError(f"Turn role {turn.role.value} is not persisted")
        if not turn.text:
            return

        async with self.session_factory() as db:
            db.add(
                models.AssistantMessage(
                    channel_id=channel_id, role=turn.role.value, content=turn.text
                )
            )
            await db.commit()

    async def recent_turns(self, channel_id: int, limit: int) -> list:
        if limit <= 0:
            return []

        async with self.session_factory() as db:
            result = await db.execute(
                select(models.AssistantMessage)
                .where(models.AssistantMessage.channel_id == channel_id)
                .order_by(
                    models.AssistantMessage.created_at.desc(),
                    models.AssistantMessage.id.desc(),
                )
                .limit(limit)
            )
            rows = list(result.scalars().all())

        turns = []
        for row in reversed(rows):
            if row.role == TurnRole.USER.value:
                turns.append(UserTurn(text=row.content))
            else:
                turns.append(ModelTurn(text=row.content))
        return turns

    async def all_turns(self, channel_id: int) -> List[models.AssistantMessage]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.AssistantMessage)
                .where(models.AssistantMessage.channel_id == channel_id)
                .order_by(
                    models.AssistantMessage.created_at.asc(),
                    models.AssistantMessage.id.asc(),
                )
            )
            return list(result.scalars().all())

    async def clear(self, channel_id: int) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(models.AssistantMessage).where(
                    models.AssistantMessage.channel_id == channel_id
                )
            )
            await db.commit()
            return result.rowcount or 0
