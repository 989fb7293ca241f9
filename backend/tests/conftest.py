"""Shared fixtures: a throwaway SQLite database and blob root per test."""
from datetime import timedelta

import pytest
from sqlalchemy import update

from filevault.config import Settings
from filevault.database import build_engine, build_session_factory
from filevault.models import Base, FileRecord
from filevault.models.base import utcnow
from filevault.services.cipher_engine import StaticKeyProvider
from filevault.services.vault import FileVault

TEST_KEY = bytes(range(32))


class RecordingNotifier:
    """Collects notices; raises for recipients listed in ``fail_for``."""

    def __init__(self, fail_for=()):
        self.notices = []
        self.fail_for = set(fail_for)

    async def notify(self, notice):
        if notice.recipient in self.fail_for:
            raise ConnectionError("mail relay unreachable")
        self.notices.append(notice)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}",
        FILE_STORAGE_PATH=str(tmp_path / "blobs"),
        ENCRYPTION_KEY=TEST_KEY.hex(),
        ENCRYPTION_KEY_ID="test",
        PUBLIC_BASE_URL="https://vault.test",
        STORAGE_TIMEOUT_SECONDS=10.0,
        CRYPTO_TIMEOUT_SECONDS=10.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def key_provider():
    return StaticKeyProvider({"test": TEST_KEY})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def vault(settings, session_factory, key_provider, notifier):
    vault = FileVault.build(settings, session_factory, key_provider=key_provider, notifier=notifier)
    yield vault
    await vault.controller.wait_for_pending()


@pytest.fixture
def expire(session_factory):
    """Move a record's deadline into the past."""

    async def _expire(record_id, ago=timedelta(minutes=5)):
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(FileRecord).where(FileRecord.id == record_id).values(expires_at=utcnow() - ago)
                )

    return _expire
