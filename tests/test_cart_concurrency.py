"""Tests for overlapping mutations: dispatch ordering, stale completions and rollback."""

import asyncio

import pytest

from conftest import ALICE, BOB, sign_in
from storefront.core.exceptions import (
    IdentityChanged,
    RemoteWriteFailed,
    StaleCompletionDiscarded,
)


async def _spin(times: int = 5) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


class TestDispatchOrdering:
    @pytest.mark.asyncio
    async def test_last_dispatched_quantity_wins(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        first = asyncio.create_task(manager.update_quantity("p1", 2))
        second = asyncio.create_task(manager.update_quantity("p1", 5))
        await store.wait_for_held(1)

        line = manager.get_line("p1")
        assert line.quantity == 5
        assert line.pending

        # The earlier write lands after the later one was dispatched
        store.held[0].release()
        await store.wait_for_held(2)
        store.held[1].release()
        first_result, second_result = await asyncio.gather(first, second)

        assert manager.get_line("p1").quantity == 5
        assert not manager.get_line("p1").pending
        assert store.get_quantity(ALICE.user_id, "p1") == 5
        assert first_result.discarded
        assert second_result.ok and not second_result.discarded
        assert len(manager.discarded) == 1
        stale = manager.discarded[0]
        assert isinstance(stale, StaleCompletionDiscarded)
        assert stale.product_id == "p1"
        assert (stale.token, stale.latest) == (1, 2)

    @pytest.mark.asyncio
    async def test_writes_reach_store_in_dispatch_order(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        tasks = [
            asyncio.create_task(manager.update_quantity("p1", quantity))
            for quantity in (2, 3, 5)
        ]
        await store.wait_for_held(1)
        store.held[0].release()
        await store.wait_for_held(2)
        store.held[1].release()
        await asyncio.gather(*tasks)

        # The middle mutation was superseded before its turn and never written
        assert store.writes() == [
            ("upsert", ALICE.user_id, "p1", 2),
            ("upsert", ALICE.user_id, "p1", 5),
        ]
        assert manager.get_line("p1").quantity == 5

    @pytest.mark.asyncio
    async def test_different_products_do_not_wait(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1, "p2": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        first = asyncio.create_task(manager.update_quantity("p1", 4))
        second = asyncio.create_task(manager.update_quantity("p2", 3))
        await store.wait_for_held(2)

        store.held[1].release()
        store.held[0].release()
        results = await asyncio.gather(first, second)

        assert all(result.ok for result in results)
        assert manager.get_line("p1").quantity == 4
        assert manager.get_line("p2").quantity == 3
        assert manager.discarded == []

    @pytest.mark.asyncio
    async def test_add_clamps_against_in_flight_decrement(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p3": 2}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        decrement = asyncio.create_task(manager.update_quantity("p3", 1))
        add = asyncio.create_task(manager.add_to_cart("p3", 5))
        await store.wait_for_held(1)
        store.held[0].release()
        await store.wait_for_held(2)
        store.held[1].release()
        _, add_result = await asyncio.gather(decrement, add)

        assert add_result.quantity == 3
        assert add_result.notices[0].code == "stock_exceeded"
        assert manager.get_line("p3").quantity == 3
        assert store.get_quantity(ALICE.user_id, "p3") == 3


class TestRollback:
    @pytest.mark.asyncio
    async def test_failed_write_reverts_line(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 3}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        task = asyncio.create_task(manager.update_quantity("p1", 4))
        await store.wait_for_held(1)
        assert manager.get_line("p1").quantity == 4

        store.held[0].release(fail=True)
        result = await task

        assert not result.ok
        assert isinstance(result.error, RemoteWriteFailed)
        assert result.quantity == 3
        line = manager.get_line("p1")
        assert line.quantity == 3
        assert line.error == "remote_write_failed"
        assert not line.pending
        assert manager.last_error is result.error

    @pytest.mark.asyncio
    async def test_retry_after_failure_clears_error(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 3}
        await sign_in(manager, identity_provider, ALICE)
        store.fail_writes = True
        await manager.update_quantity("p1", 4)

        store.fail_writes = False
        result = await manager.update_quantity("p1", 4)

        assert result.ok
        assert manager.get_line("p1").quantity == 4
        assert manager.get_line("p1").error is None
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_failed_add_of_new_line_removes_it(self, manager, store, identity_provider):
        await sign_in(manager, identity_provider, ALICE)
        store.fail_writes = True

        result = await manager.add_to_cart("p1", 2)

        assert not result.ok
        assert isinstance(result.error, RemoteWriteFailed)
        assert manager.get_line("p1") is None
        assert manager.total_items() == 0

    @pytest.mark.asyncio
    async def test_failed_remove_restores_line_in_place(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1, "p2": 2}
        await sign_in(manager, identity_provider, ALICE)
        store.fail_writes = True

        result = await manager.remove_from_cart("p1")

        assert not result.ok
        assert [(line.product_id, line.quantity) for line in manager.items()] == [("p1", 1), ("p2", 2)]

    @pytest.mark.asyncio
    async def test_stale_failure_does_not_roll_back(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        first = asyncio.create_task(manager.update_quantity("p1", 2))
        second = asyncio.create_task(manager.update_quantity("p1", 5))
        await store.wait_for_held(1)
        store.held[0].release(fail=True)
        await store.wait_for_held(2)

        assert manager.get_line("p1").quantity == 5
        store.held[1].release()
        first_result, second_result = await asyncio.gather(first, second)

        assert first_result.ok and first_result.discarded
        assert second_result.ok
        assert manager.get_line("p1").quantity == 5
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_rollback_uses_last_confirmed_write(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        first = asyncio.create_task(manager.update_quantity("p1", 2))
        second = asyncio.create_task(manager.update_quantity("p1", 5))
        await store.wait_for_held(1)
        store.held[0].release()
        await store.wait_for_held(2)
        store.held[1].release(fail=True)
        _, second_result = await asyncio.gather(first, second)

        assert not second_result.ok
        assert manager.get_line("p1").quantity == 2
        assert store.get_quantity(ALICE.user_id, "p1") == 2


class TestMutationsAcrossLoads:
    @pytest.mark.asyncio
    async def test_mutation_waits_for_initial_load(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        store.hold_reads = True
        identity_provider.set_identity(ALICE)
        await store.wait_for_held(1)

        task = asyncio.create_task(manager.add_to_cart("p1"))
        await _spin()
        assert manager.is_loading()
        assert store.writes() == []

        store.held[0].release()
        result = await task
        await manager.settle()

        assert result.ok
        assert manager.get_line("p1").quantity == 2
        assert store.get_quantity(ALICE.user_id, "p1") == 2

    @pytest.mark.asyncio
    async def test_queued_mutation_rejected_after_sign_out(self, manager, store, identity_provider):
        store.hold_reads = True
        identity_provider.set_identity(ALICE)
        await store.wait_for_held(1)

        task = asyncio.create_task(manager.add_to_cart("p1"))
        await _spin()
        identity_provider.sign_out()
        result = await task

        assert result.requires_sign_in
        store.held[0].release()
        await manager.settle()
        assert manager.items() == []
        assert store.writes() == []

    @pytest.mark.asyncio
    async def test_write_completing_after_identity_change_is_ignored(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1}
        store.rows[BOB.user_id] = {"p2": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        task = asyncio.create_task(manager.update_quantity("p1", 3))
        await store.wait_for_held(1)
        await sign_in(manager, identity_provider, BOB)

        store.held[0].release()
        result = await task

        assert not result.ok
        assert isinstance(result.error, IdentityChanged)
        assert [line.product_id for line in manager.items()] == ["p2"]

    @pytest.mark.asyncio
    async def test_refresh_keeps_in_flight_line(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p1": 1, "p2": 1, "p3": 1}
        await sign_in(manager, identity_provider, ALICE)
        store.hold_writes = True

        task = asyncio.create_task(manager.update_quantity("p1", 4))
        await store.wait_for_held(1)
        refreshed = await manager.refresh()

        assert refreshed.ok
        line = manager.get_line("p1")
        assert line.quantity == 4
        assert line.pending
        assert [line.product_id for line in manager.items()] == ["p1", "p2", "p3"]

        store.held[0].release()
        await task
        assert manager.get_line("p1").quantity == 4
        assert not manager.get_line("p1").pending
        assert [line.product_id for line in manager.items()] == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_refresh_appends_new_remote_rows(self, manager, store, identity_provider):
        store.rows[ALICE.user_id] = {"p2": 1, "p1": 1}
        await sign_in(manager, identity_provider, ALICE)

        store.rows[ALICE.user_id] = {"p3": 1, "p1": 2, "p2": 1}
        await manager.refresh()

        assert [(line.product_id, line.quantity) for line in manager.items()] == [
            ("p2", 1),
            ("p1", 2),
            ("p3", 1),
        ]
