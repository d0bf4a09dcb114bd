"""Unit of Work tests.

Tests focus on transaction management:
- Successful exits commit
- Exceptions roll back and propagate
- Work across repositories is atomic
"""

import pytest
from sqlalchemy import DateTime
from sqlmodel import SQLModel

from fakes import load_task, seed_task
from pixelrelay.models.credit import CreditEntryKind, CreditLogEntry
from pixelrelay.models.provider_key import ProviderKey


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    async with await uow_factory() as uow:
        key = await uow.provider_keys.add(ProviderKey(provider="freepik", secret="s1"))

    async with await uow_factory() as uow:
        found = await uow.provider_keys.get(key.id)

    assert found is not None
    assert found.secret == "s1"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            key = await uow.provider_keys.add(ProviderKey(provider="freepik", secret="s2"))
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.provider_keys.get(key.id) is None


@pytest.mark.asyncio
async def test_uow_multi_repository_atomicity(uow_factory):
    """A balance change and its log row commit or roll back together."""
    async with await uow_factory() as uow:
        await uow.credits.add_to_balance("user-1", 10)

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            balance = await uow.credits.try_debit("user-1", 4)
            await uow.credits.append_log(
                CreditLogEntry(
                    owner="user-1", kind=CreditEntryKind.DEBIT, amount=4, balance_after=balance
                )
            )
            raise RuntimeError("crash before commit")

    async with await uow_factory() as uow:
        assert await uow.credits.get_balance("user-1") == 10
        assert await uow.credits.list_history("user-1") == []


@pytest.mark.asyncio
async def test_uow_exposes_every_repository(uow_factory):
    task = await seed_task(uow_factory)

    async with await uow_factory() as uow:
        assert (await uow.tasks.get(task.id)).id == task.id
        assert await uow.trials.get("unknown-fingerprint") is None
        assert await uow.credits.get_balance("nobody") is None
        assert await uow.provider_keys.list_available("freepik") == []


def test_timestamp_columns_store_timezone():
    columns = [
        column
        for table in SQLModel.metadata.sorted_tables
        for column in table.columns
        if isinstance(column.type, DateTime)
    ]

    assert columns
    assert all(column.type.timezone for column in columns)


@pytest.mark.asyncio
async def test_persisted_task_age_is_computable(uow_factory):
    task = await seed_task(uow_factory, age_seconds=120)

    stored = await load_task(uow_factory, task.id)

    assert 119 <= stored.age_seconds() < 180
