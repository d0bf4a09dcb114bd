"""Repository layer tests.

Tests focus on the conditional statements the orchestration core relies on:
- processing -> uploading gate has exactly one winner
- stale/unrefunded task discovery
- provider key claims never exceed the daily limit
- credit debits never go below zero; refund markers are unique
- one trial per fingerprint

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from fakes import seed_task
from pixelrelay.core.timezone import utc_today
from pixelrelay.models.credit import CreditEntryKind, CreditLogEntry, refund_idempotency_key
from pixelrelay.models.provider_key import ProviderKey
from pixelrelay.models.task import TaskKind, TaskStatus
from pixelrelay.services.policies import absolute_ceilings


@pytest.mark.asyncio
class TestTaskRepository:
    async def test_cas_status_single_winner(self, uow_factory):
        task = await seed_task(uow_factory)

        async with await uow_factory() as uow:
            first = await uow.tasks.cas_status(task.id, TaskStatus.PROCESSING, TaskStatus.UPLOADING)
        async with await uow_factory() as uow:
            second = await uow.tasks.cas_status(task.id, TaskStatus.PROCESSING, TaskStatus.UPLOADING)
            current = await uow.tasks.get(task.id)

        assert first is True
        assert second is False
        assert current.status == TaskStatus.UPLOADING

    async def test_update_status_is_unconditional(self, uow_factory):
        """The store itself never refuses a write; exactly-once lives in the completion handler."""
        task = await seed_task(uow_factory, status=TaskStatus.COMPLETED)

        async with await uow_factory() as uow:
            await uow.tasks.update_status(task.id, TaskStatus.FAILED, error={"code": "x", "message": "y"})
        async with await uow_factory() as uow:
            current = await uow.tasks.get(task.id)

        assert current.status == TaskStatus.FAILED
        assert current.completed_at is not None

    async def test_get_by_provider_task_id(self, uow_factory):
        task = await seed_task(uow_factory, provider_task_id="fp-123")

        async with await uow_factory() as uow:
            found = await uow.tasks.get_by_provider_task_id("fp-123")
            missing = await uow.tasks.get_by_provider_task_id("fp-999")

        assert found.id == task.id
        assert missing is None

    async def test_provider_task_id_is_unique(self, uow_factory):
        await seed_task(uow_factory, provider_task_id="fp-dup")

        with pytest.raises(IntegrityError):
            await seed_task(uow_factory, provider_task_id="fp-dup")

    async def test_record_poll_attempt_only_moves_forward(self, uow_factory):
        task = await seed_task(uow_factory)

        async with await uow_factory() as uow:
            await uow.tasks.record_poll_attempt(task.id, 3)
        async with await uow_factory() as uow:
            await uow.tasks.record_poll_attempt(task.id, 2)
            current = await uow.tasks.get(task.id)

        assert current.poll_attempts == 3

    async def test_find_stale_processing_uses_per_kind_ceiling(self, uow_factory):
        # Background removal ceiling is 10 minutes, upscale 30 minutes
        stale_bg = await seed_task(uow_factory, age_seconds=15 * 60, kind=TaskKind.BACKGROUND_REMOVAL)
        young_upscale = await seed_task(uow_factory, age_seconds=15 * 60)
        stale_uploading = await seed_task(
            uow_factory, age_seconds=45 * 60, status=TaskStatus.UPLOADING
        )
        await seed_task(uow_factory, age_seconds=45 * 60, status=TaskStatus.COMPLETED)

        async with await uow_factory() as uow:
            stale = await uow.tasks.find_stale_processing(absolute_ceilings())

        ids = [t.id for t in stale]
        assert ids == [stale_uploading.id, stale_bg.id]
        assert young_upscale.id not in ids

    async def test_find_failed_unrefunded(self, uow_factory):
        unrefunded = await seed_task(uow_factory, status=TaskStatus.FAILED)
        refunded = await seed_task(uow_factory, status=TaskStatus.FAILED)
        await seed_task(uow_factory, status=TaskStatus.FAILED, credits_consumed=0)
        await seed_task(uow_factory, status=TaskStatus.FAILED, is_trial=True, owner="anon:fp")
        await seed_task(uow_factory, status=TaskStatus.COMPLETED)

        async with await uow_factory() as uow:
            await uow.credits.append_log(
                CreditLogEntry(
                    owner="user-1",
                    kind=CreditEntryKind.REFUND,
                    amount=2,
                    balance_after=2,
                    task_id=refunded.id,
                    idempotency_key=refund_idempotency_key(refunded.id),
                )
            )

        async with await uow_factory() as uow:
            found = await uow.tasks.find_failed_unrefunded()

        assert [t.id for t in found] == [unrefunded.id]

    async def test_delete(self, uow_factory):
        task = await seed_task(uow_factory)

        async with await uow_factory() as uow:
            await uow.tasks.delete(task.id)
        async with await uow_factory() as uow:
            assert await uow.tasks.get(task.id) is None


@pytest.mark.asyncio
class TestProviderKeyRepository:
    async def test_try_claim_stops_at_daily_limit(self, uow_factory):
        async with await uow_factory() as uow:
            key = await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="s", daily_limit=2)
            )

        results = []
        for _ in range(3):
            async with await uow_factory() as uow:
                results.append(await uow.provider_keys.try_claim(key.id))

        async with await uow_factory() as uow:
            current = await uow.provider_keys.get(key.id)

        assert results == [True, True, False]
        assert current.used_today == 2

    async def test_inactive_key_is_never_claimed(self, uow_factory):
        async with await uow_factory() as uow:
            key = await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="s", is_active=False)
            )
            assert await uow.provider_keys.list_available("freepik") == []
            assert await uow.provider_keys.try_claim(key.id) is False

    async def test_reset_stale_days(self, uow_factory):
        yesterday = utc_today() - timedelta(days=1)
        async with await uow_factory() as uow:
            stale = await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="a", used_today=100, last_reset_date=yesterday)
            )
            fresh = await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="b", used_today=7)
            )

        async with await uow_factory() as uow:
            reset = await uow.provider_keys.reset_stale_days("freepik", utc_today())
        async with await uow_factory() as uow:
            again = await uow.provider_keys.reset_stale_days("freepik", utc_today())
            stale_now = await uow.provider_keys.get(stale.id)
            fresh_now = await uow.provider_keys.get(fresh.id)

        assert reset == 1
        assert again == 0
        assert stale_now.used_today == 0
        assert stale_now.last_reset_date == utc_today()
        assert fresh_now.used_today == 7

    async def test_decrement_floors_at_zero(self, uow_factory):
        async with await uow_factory() as uow:
            key = await uow.provider_keys.add(ProviderKey(provider="freepik", secret="s", used_today=1))

        async with await uow_factory() as uow:
            first = await uow.provider_keys.decrement(key.id)
        async with await uow_factory() as uow:
            second = await uow.provider_keys.decrement(key.id)
            current = await uow.provider_keys.get(key.id)

        assert (first, second) == (True, False)
        assert current.used_today == 0

    async def test_list_available_least_used_first(self, uow_factory):
        async with await uow_factory() as uow:
            busy = await uow.provider_keys.add(ProviderKey(provider="freepik", secret="busy", used_today=50))
            idle = await uow.provider_keys.add(ProviderKey(provider="freepik", secret="idle", used_today=3))
            await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="full", used_today=100, daily_limit=100)
            )
            await uow.provider_keys.add(ProviderKey(provider="other", secret="x"))

        async with await uow_factory() as uow:
            available = await uow.provider_keys.list_available("freepik")

        assert [k.id for k in available] == [idle.id, busy.id]

    async def test_stats(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.provider_keys.add(ProviderKey(provider="freepik", secret="a", used_today=10))
            await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="b", used_today=100, daily_limit=100)
            )
            await uow.provider_keys.add(
                ProviderKey(provider="freepik", secret="c", is_active=False, daily_limit=50)
            )

        async with await uow_factory() as uow:
            stats = await uow.provider_keys.stats("freepik")

        assert stats == {
            "total_keys": 3,
            "active_keys": 2,
            "total_daily_limit": 200,
            "total_used_today": 110,
            "available_keys": 1,
        }


@pytest.mark.asyncio
class TestCreditRepository:
    async def test_try_debit_never_goes_negative(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.credits.add_to_balance("user-1", 3)

        async with await uow_factory() as uow:
            first = await uow.credits.try_debit("user-1", 2)
        async with await uow_factory() as uow:
            second = await uow.credits.try_debit("user-1", 2)
            balance = await uow.credits.get_balance("user-1")

        assert first == 1
        assert second is None
        assert balance == 1

    async def test_try_debit_without_account(self, uow_factory):
        async with await uow_factory() as uow:
            assert await uow.credits.try_debit("ghost", 1) is None

    async def test_idempotency_key_is_unique(self, uow_factory):
        entry = dict(owner="user-1", kind=CreditEntryKind.REFUND, amount=1, balance_after=1)
        async with await uow_factory() as uow:
            await uow.credits.append_log(CreditLogEntry(**entry, idempotency_key="refund:abc"))

        with pytest.raises(IntegrityError):
            async with await uow_factory() as uow:
                await uow.credits.append_log(CreditLogEntry(**entry, idempotency_key="refund:abc"))


@pytest.mark.asyncio
class TestTrialUsageRepository:
    async def test_one_claim_per_fingerprint(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.trials.claim("fingerprint-0123456789")

        with pytest.raises(IntegrityError):
            async with await uow_factory() as uow:
                await uow.trials.claim("fingerprint-0123456789")

    async def test_release_allows_new_claim(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.trials.claim("fingerprint-0123456789")
        async with await uow_factory() as uow:
            await uow.trials.release("fingerprint-0123456789")
        async with await uow_factory() as uow:
            usage = await uow.trials.claim("fingerprint-0123456789")

        assert usage.fingerprint == "fingerprint-0123456789"
