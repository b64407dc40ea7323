"""MongoDB stores against a real replica set (transactions need one).

Set TEST_MONGODB_URI, e.g. mongodb://localhost:27017/?replicaSet=rs0, to run.
"""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import InsufficientBalanceError
from visionstudio.db.init import close_db, get_client, init_db
from visionstudio.stores.base import get_stores

MONGODB_URI = os.environ.get("TEST_MONGODB_URI")

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not MONGODB_URI, reason="TEST_MONGODB_URI not set"),
]


@pytest_asyncio.fixture
async def mongo_stores(monkeypatch):
    db_name = f"visionstudio_test_{uuid.uuid4().hex[:8]}"
    monkeypatch.setenv("STORE_BACKEND", "mongo")
    monkeypatch.setenv("MONGODB_URI", MONGODB_URI)
    monkeypatch.setenv("MONGODB_DB_NAME", db_name)
    get_settings.cache_clear()
    get_stores.cache_clear()
    await init_db()
    try:
        yield get_stores()
    finally:
        await get_client().drop_database(db_name)
        await close_db()


async def _account(stores, balance: int = 1000):
    return await stores.ledger.create_account(
        f"user-{uuid.uuid4().hex[:6]}", display_name="", role="user", initial_grant=balance, is_approved=True
    )


async def test_concurrent_charges(mongo_stores):
    account = await _account(mongo_stores, 200)
    await asyncio.gather(
        mongo_stores.ledger.charge(account.id, 30, "engine", allow_negative=True),
        mongo_stores.ledger.charge(account.id, 70, "engine", allow_negative=True),
    )
    assert (await mongo_stores.ledger.get_account(account.id)).token_balance == 100
    assert await mongo_stores.ledger.sum_deltas(account.id) == -100


async def test_reject_writes_nothing(mongo_stores):
    account = await _account(mongo_stores, 20)
    with pytest.raises(InsufficientBalanceError):
        await mongo_stores.ledger.charge(account.id, 50, "engine", allow_negative=False)
    assert (await mongo_stores.ledger.get_account(account.id)).token_balance == 20
    assert await mongo_stores.ledger.list_usage(account.id) == []


async def test_idempotency_key(mongo_stores):
    account = await _account(mongo_stores)
    first = await mongo_stores.ledger.charge(account.id, 10, "engine", allow_negative=True, idempotency_key="k")
    again = await mongo_stores.ledger.charge(account.id, 10, "engine", allow_negative=True, idempotency_key="k")
    assert again.duplicate
    assert again.record.id == first.record.id
    assert (await mongo_stores.ledger.get_account(account.id)).token_balance == 990


async def test_set_balance_records(mongo_stores):
    account = await _account(mongo_stores, 500)
    up = await mongo_stores.ledger.set_balance(account.id, 2000, "administrative adjustment", record_debits=False)
    down = await mongo_stores.ledger.set_balance(account.id, 100, "administrative adjustment", record_debits=False)
    assert up.delta == 1500 and up.record is not None
    assert down.delta == -1900 and down.record is None


async def test_append_message_advances_session(mongo_stores):
    account = await _account(mongo_stores)
    session = await mongo_stores.chat.create_session(account.id)
    first = await mongo_stores.chat.append_message(session.id, "user", "hi")
    second = await mongo_stores.chat.append_message(session.id, "assistant", "hello")
    assert (first.seq, second.seq) == (1, 2)
    stored = await mongo_stores.chat.get_session(session.id)
    assert stored.message_count == 2
    assert stored.last_activity_at >= session.last_activity_at
    assert [m.content for m in await mongo_stores.chat.list_messages(session.id)] == ["hi", "hello"]
