"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from groupchat.jobs.ledger import QuotaRepository
from groupchat.jobs.repository import GroupChatRepository
from tests.fakes import HandlerHarness


@pytest.fixture()
def harness() -> HandlerHarness:
    return HandlerHarness()


@pytest.fixture()
def stores(tmp_path: Path):
    """Migrated SQLite database with repository and ledger facades."""

    db_path = tmp_path / "groupchat.db"
    repository = GroupChatRepository(db_path)
    repository.init_schema()
    quota = QuotaRepository(db_path)
    yield repository, quota
    quota.close()
    repository.close()
