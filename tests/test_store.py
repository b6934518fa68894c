import asyncio
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock

from sqlalchemy.exc import IntegrityError

from omnichat.models import Contact, Setting
from omnichat.schemas.inbound import Profile
from omnichat.services.store import ConversationStore, tenant_filter
from tests.fakes import utc


def scalars_result(first=None, rows=None):
    result = Mock()
    result.scalars.return_value.first.return_value = first
    result.scalars.return_value.all.return_value = rows or []
    return result


def make_store(*results, flush_side_effect=None):
    db = AsyncMock()
    db.add = Mock()
    db.execute.side_effect = list(results)
    if flush_side_effect is not None:
        db.flush.side_effect = flush_side_effect
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=db)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ConversationStore(Mock(return_value=ctx)), db


class TestTenantFilter:
    def test_global_scope_is_null(self):
        assert str(tenant_filter(Setting.company_id, None)) == "settings.company_id IS NULL"

    def test_company_scope_is_equality(self):
        clause = tenant_filter(Setting.company_id, uuid.uuid4())
        assert str(clause) == "settings.company_id = :company_id_1"


class TestFindOrCreateContact:
    def test_creates_contact_with_profile(self):
        store, db = make_store(scalars_result(first=None))
        tenant = uuid.uuid4()

        contact = asyncio.run(
            store.find_or_create_contact(tenant, "telegram", 555, Profile(first_name="Ana", username="ana"), utc(2026, 1, 1))
        )

        assert isinstance(contact, Contact)
        assert contact.company_id == tenant
        assert contact.platform_id == "555"
        assert contact.first_name == "Ana"
        assert contact.last_interaction == utc(2026, 1, 1)
        db.add.assert_called_once_with(contact)
        db.commit.assert_awaited_once()

    def test_existing_contact_keeps_fields_on_blank_profile(self):
        existing = Contact(company_id=None, platform="telegram", platform_id="555", first_name="Ana", bio="hola")
        store, db = make_store(scalars_result(first=existing))

        contact = asyncio.run(
            store.find_or_create_contact(None, "telegram", "555", Profile(first_name="", bio="nueva bio"), utc(2026, 1, 2))
        )

        assert contact is existing
        assert contact.first_name == "Ana"
        assert contact.bio == "nueva bio"
        db.add.assert_not_called()

    def test_concurrent_insert_falls_back_to_existing_row(self):
        existing = Contact(company_id=None, platform="telegram", platform_id="555")
        store, db = make_store(
            scalars_result(first=None),
            scalars_result(first=existing),
            flush_side_effect=IntegrityError("INSERT INTO contacts", {}, Exception("duplicate key")),
        )

        contact = asyncio.run(store.find_or_create_contact(None, "telegram", "555", Profile(), utc(2026, 1, 1)))

        assert contact is existing
        db.rollback.assert_awaited_once()


class TestQueries:
    def test_settings_map(self):
        rows = [SimpleNamespace(key="SYSTEM_PROMPT", value="Eres Pepe"), SimpleNamespace(key="MESSAGE_BUFFER_SECONDS", value="5")]
        store, _ = make_store(scalars_result(rows=rows))

        assert asyncio.run(store.get_settings_map(None)) == {"SYSTEM_PROMPT": "Eres Pepe", "MESSAGE_BUFFER_SECONDS": "5"}

    def test_recent_messages_returned_oldest_first(self):
        newest, older = SimpleNamespace(content="b"), SimpleNamespace(content="a")
        store, _ = make_store(scalars_result(rows=[newest, older]))

        rows = asyncio.run(store.recent_messages(uuid.uuid4(), 20))

        assert [r.content for r in rows] == ["a", "b"]

    def test_deactivate_returns_rowcount(self):
        result = Mock(rowcount=2)
        store, db = make_store(result)

        assert asyncio.run(store.deactivate_active_sessions(None, uuid.uuid4(), utc(2026, 1, 1))) == 2
        db.commit.assert_awaited_once()
