"""
Tests for the background cache sync service.
"""
import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.background_sync import BackgroundSyncService
from storage.database import Base
from storage.service import StorageService


class FakeService:
    def __init__(self, fail_users=()):
        self.fail_users = set(fail_users)
        self.synced = []

    async def background_sync(self, user_id, accounts):
        if user_id in self.fail_users:
            raise RuntimeError("sync exploded")
        self.synced.append((user_id, [account.id for account in accounts]))
        return len(accounts)

    def get_cache_stats(self):
        return {"total_entries": 0, "memory_usage": 0}

    def get_batch_stats(self):
        return {"pending_batches": 0, "total_pending_requests": 0}


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def users(session_factory):
    db = session_factory()
    storage = StorageService(db)
    ids = []
    for index in range(3):
        user = storage.create_user(email=f"user{index}@example.com")
        for account_index in range(3):
            storage.create_account(
                user_id=user.id, name=f"Account {account_index}", api_key=f"key-{index}-{account_index}"
            )
        ids.append(user.id)
    idle = storage.create_user(email="idle@example.com")
    ids.append(idle.id)
    db.close()
    return ids


def _service(session_factory, fake, sleeps, **kwargs):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return BackgroundSyncService(fake, session_factory, sleep=_sleep, **kwargs)


def test_run_sync_respects_user_and_account_caps(session_factory, users):
    fake = FakeService()
    sleeps = []
    sync = _service(session_factory, fake, sleeps, max_users=2, max_accounts=2, user_delay_seconds=1.0)
    stats = asyncio.run(sync.run_sync())

    assert stats.users_processed == 2
    assert stats.accounts_processed == 4
    assert stats.errors == 0
    assert [user_id for user_id, _ in fake.synced] == users[:2]
    assert all(len(account_ids) == 2 for _, account_ids in fake.synced)
    assert sleeps == [1.0]
    assert sync.last_sync is not None


def test_run_sync_isolates_user_failures(session_factory, users):
    fake = FakeService(fail_users={users[0]})
    sync = _service(session_factory, fake, [], user_delay_seconds=0)
    stats = asyncio.run(sync.run_sync())
    assert stats.errors == 1
    assert stats.users_processed == 2


def test_sync_user(session_factory, users):
    fake = FakeService()
    sync = _service(session_factory, fake, [])
    assert asyncio.run(sync.sync_user(users[1])) == {"success": True, "accounts_processed": 3, "errors": 0}
    assert asyncio.run(sync.sync_user(users[3])) == {"success": True, "accounts_processed": 0, "errors": 0}
    assert asyncio.run(sync.sync_user(9999)) == {"success": True, "accounts_processed": 0, "errors": 0}

    failing = _service(session_factory, FakeService(fail_users={users[0]}), [])
    assert asyncio.run(failing.sync_user(users[0])) == {"success": False, "accounts_processed": 0, "errors": 1}


def test_health_check(session_factory, users):
    sync = _service(session_factory, FakeService(), [], user_delay_seconds=0)
    before = sync.health_check()
    assert before["is_running"] is False
    assert before["last_sync"] is None

    asyncio.run(sync.run_sync())
    after = sync.health_check()
    assert after["last_stats"]["users_processed"] == 3
    assert after["stats"]["cache"]["total_entries"] == 0


def test_disabled_service_does_not_start(session_factory):
    sync = _service(session_factory, FakeService(), [], enabled=False)

    async def scenario():
        return sync.start(), await sync.stop()

    assert asyncio.run(scenario()) == (False, False)
