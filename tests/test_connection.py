"""Tests for engine and session wiring."""
from typing import Any

import pytest
from sqlalchemy import select

from payment_routing.config import Settings
from payment_routing.database import connection
from payment_routing.database.models import Account


class TestEngineOptions:
    @pytest.mark.unit
    def test_sqlite_has_no_pool_sizing(self):
        options = connection.engine_options(Settings(database_url="sqlite+aiosqlite:///x.db"))

        assert options == {"echo": False}

    @pytest.mark.unit
    def test_postgres_pool_from_settings(self):
        settings = Settings(
            database_url="postgresql+asyncpg://u:p@db/payments",
            database_pool_size=7,
            database_max_overflow=3,
        )

        options = connection.engine_options(settings)

        assert options["pool_size"] == 7
        assert options["max_overflow"] == 3
        assert options["pool_pre_ping"] is True


class TestSessions:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_init_commit_and_close(self, tmp_path: Any, mocker: Any):
        await connection.close_db()
        mocker.patch(
            "payment_routing.database.connection.get_settings",
            return_value=Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/wiring.db"),
        )
        try:
            await connection.init_db()

            sessions = connection.get_db()
            db = await sessions.__anext__()
            db.add(Account(user_id="user_1", currency="USD", account_type="PERSONAL"))
            with pytest.raises(StopAsyncIteration):
                await sessions.__anext__()

            async with connection.get_session_factory()() as db:
                rows = (await db.execute(select(Account))).scalars().all()
            assert [row.user_id for row in rows] == ["user_1"]
            assert connection.get_session_factory() is connection.get_session_factory()
        finally:
            await connection.close_db()

        assert connection._engine is None
