"""Async storage collaborator for the conversation core.

Every query is scoped by tenant. A tenant of ``None`` is the platform-level
scope (superadmin bot and global defaults) and is matched with ``IS NULL``.
Each method opens its own short-lived session so concurrent flushes for
different conversations never share one.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from omnichat.logging_config import get_logger
from omnichat.models import Asset, ChatSession, Company, Contact, Message, Setting, Summary, UsageLog
from omnichat.schemas.inbound import Profile

logger = get_logger("store")

PROFILE_FIELDS = ("first_name", "username", "avatar_url", "bio", "platform_link")


def tenant_filter(column, tenant_id: Optional[UUID]):
    if tenant_id is None:
        return column.is_(None)
    return column == tenant_id


class ConversationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # --- tenants & settings ---

    async def get_company(self, company_id: UUID) -> Optional[Company]:
        async with self.session_factory() as db:
            return await db.get(Company, company_id)

    async def save_company_status(self, company_id: UUID, plan_status: str, now: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Company).where(Company.id == company_id).values(plan_status=plan_status, updated_at=now)
            )
            await db.commit()

    async def list_active_company_ids(self) -> list[UUID]:
        async with self.session_factory() as db:
            result = await db.execute(select(Company.id).where(Company.is_active.is_(True)))
            return list(result.scalars().all())

    async def get_setting(self, tenant_id: Optional[UUID], key: str) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Setting.value).where(tenant_filter(Setting.company_id, tenant_id), Setting.key == key).limit(1)
            )
            return result.scalars().first()

    async def get_settings_map(self, tenant_id: Optional[UUID]) -> dict[str, str]:
        async with self.session_factory() as db:
            result = await db.execute(select(Setting).where(tenant_filter(Setting.company_id, tenant_id)))
            return {row.key: row.value for row in result.scalars().all()}

    # --- contacts ---

    async def find_or_create_contact(
        self,
        tenant_id: Optional[UUID],
        channel: str,
        external_id: str,
        profile: Profile,
        now: datetime,
    ) -> Contact:
        """Find contact by (tenant, channel, external id), creating it on first contact.

        Known profile fields are only overwritten with non-empty values.
        """
        async with self.session_factory() as db:
            contact = await self._select_contact(db, tenant_id, channel, external_id)
            if contact is None:
                contact = Contact(company_id=tenant_id, platform=channel, platform_id=str(external_id))
                db.add(contact)
                try:
                    await db.flush()
                except IntegrityError:
                    # Another flush created it first.
                    await db.rollback()
                    contact = await self._select_contact(db, tenant_id, channel, external_id)
                    if contact is None:
                        raise

            for field in PROFILE_FIELDS:
                value = getattr(profile, field)
                if value:
                    setattr(contact, field, value)
            contact.last_interaction = now

            await db.commit()
            return contact

    async def _select_contact(
        self, db: AsyncSession, tenant_id: Optional[UUID], channel: str, external_id: str
    ) -> Optional[Contact]:
        result = await db.execute(
            select(Contact).where(
                tenant_filter(Contact.company_id, tenant_id),
                Contact.platform == channel,
                Contact.platform_id == str(external_id),
            )
        )
        return result.scalars().first()

    # --- sessions ---

    async def get_active_session(self, tenant_id: Optional[UUID], contact_id: UUID) -> Optional[ChatSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatSession)
                .where(
                    tenant_filter(ChatSession.company_id, tenant_id),
                    ChatSession.contact_id == contact_id,
                    ChatSession.is_active.is_(True),
                )
                .order_by(ChatSession.start_time.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def get_last_message_time(self, session_id: UUID) -> Optional[datetime]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Message.timestamp)
                .where(Message.session_id == session_id)
                .order_by(Message.timestamp.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def deactivate_active_sessions(self, tenant_id: Optional[UUID], contact_id: UUID, now: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ChatSession)
                .where(
                    tenant_filter(ChatSession.company_id, tenant_id),
                    ChatSession.contact_id == contact_id,
                    ChatSession.is_active.is_(True),
                )
                .values(is_active=False, end_time=now, updated_at=now)
            )
            await db.commit()
            return result.rowcount or 0

    async def close_session(self, session_id: UUID, now: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(is_active=False, end_time=now, updated_at=now)
            )
            await db.commit()

    async def create_session(self, tenant_id: Optional[UUID], contact_id: UUID, now: datetime) -> ChatSession:
        async with self.session_factory() as db:
            session = ChatSession(
                company_id=tenant_id,
                contact_id=contact_id,
                is_active=True,
                is_pinned=False,
                start_time=now,
                updated_at=now,
            )
            db.add(session)
            await db.commit()
            return session

    async def touch_session(self, session_id: UUID, now: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(update(ChatSession).where(ChatSession.id == session_id).values(updated_at=now))
            await db.commit()

    # --- messages & summaries ---

    async def list_session_messages(self, session_id: UUID) -> list[Message]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Message).where(Message.session_id == session_id).order_by(Message.timestamp.asc())
            )
            return list(result.scalars().all())

    async def recent_messages(self, session_id: UUID, limit: int) -> list[Message]:
        """Last ``limit`` messages of a session, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Message)
                .where(Message.session_id == session_id)
                .order_by(Message.timestamp.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return rows

    async def add_message(
        self,
        tenant_id: Optional[UUID],
        session_id: UUID,
        role: str,
        content: str,
        now: datetime,
        content_type: str = "text",
        media_url: Optional[str] = None,
        buttons: Optional[list[dict]] = None,
    ) -> Message:
        async with self.session_factory() as db:
            message = Message(
                company_id=tenant_id,
                session_id=session_id,
                role=role,
                content=content,
                content_type=content_type,
                media_url=media_url,
                buttons=buttons,
                timestamp=now,
            )
            db.add(message)
            await db.commit()
            return message

    async def add_summary(
        self,
        tenant_id: Optional[UUID],
        contact_id: UUID,
        summary_text: str,
        range_start: Optional[datetime],
        range_end: datetime,
    ) -> Summary:
        async with self.session_factory() as db:
            summary = Summary(
                company_id=tenant_id,
                contact_id=contact_id,
                summary_text=summary_text,
                date_range_start=range_start,
                date_range_end=range_end,
                created_at=range_end,
            )
            db.add(summary)
            await db.commit()
            return summary

    async def recent_summaries(self, tenant_id: Optional[UUID], contact_id: UUID, limit: int) -> list[Summary]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Summary)
                .where(tenant_filter(Summary.company_id, tenant_id), Summary.contact_id == contact_id)
                .order_by(Summary.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # --- assets ---

    async def knowledge_assets(self, tenant_id: Optional[UUID], limit: int) -> list[Asset]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Asset)
                .where(tenant_filter(Asset.company_id, tenant_id), Asset.is_knowledge.is_(True))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_asset_by_name(self, tenant_id: Optional[UUID], name: str) -> Optional[Asset]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Asset).where(tenant_filter(Asset.company_id, tenant_id), Asset.name == name).limit(1)
            )
            return result.scalars().first()

    # --- billing ---

    async def record_usage(
        self,
        tenant_id: Optional[UUID],
        model: str,
        tokens_prompt: int,
        tokens_completion: int,
        request_type: str,
        now: datetime,
    ) -> None:
        async with self.session_factory() as db:
            db.add(
                UsageLog(
                    company_id=tenant_id,
                    model=model,
                    tokens_prompt=tokens_prompt,
                    tokens_completion=tokens_completion,
                    request_type=request_type,
                    date=now,
                )
            )
            await db.commit()
