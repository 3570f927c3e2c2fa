"""
Tests for the reconciliation job.

Covers status transitions, write counting, per-transaction isolation,
failure backoff and stuck parking, circuit breaker deferral, the job
lease, overlapping passes, and balance refresh after confirmation.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from reconciler.db.models import TransactionStatus
from reconciler.db.repositories import TransactionRepository
from reconciler.db.unit_of_work import UnitOfWork
from reconciler.reconciliation.clients.base import ChainConnectionError, ReceiptStatus
from reconciler.reconciliation.clients.mock_client import MockChainClient
from reconciler.reconciliation.config import (
    CircuitBreakerConfig,
    FailureBackoffConfig,
    RetryConfig,
)
from reconciler.reconciliation.job import ReconciliationJob
from reconciler.reconciliation.metrics import PassStatus


def events(logs, name):
    return [entry for entry in logs if entry["event"] == name]


class TestStatusTransitions:
    """A confirmed, an erroring and a still-pending transaction in one pass."""

    @pytest.mark.asyncio
    async def test_mixed_batch(
        self,
        make_job,
        chain_client,
        create_wallet,
        create_transaction,
        get_transaction,
        get_wallet,
        write_spy,
    ):
        """T1 confirms, T2 errors, T3 stays pending; only T1 causes writes."""
        w1 = await create_wallet(balance={"native": "0", "usdc": "5"})
        w2 = await create_wallet()
        w3 = await create_wallet()
        t1 = await create_transaction(w1, tx_hash="0xaaa")
        t2 = await create_transaction(w2, tx_hash="0xbbb")
        t3 = await create_transaction(w3, tx_hash="0xccc")

        chain_client.set_receipt("ethereum", "0xaaa", ReceiptStatus.CONFIRMED)
        chain_client.set_balance("ethereum", w1.address, "1.5")
        chain_client.fail_hash("0xbbb")

        job = make_job()
        with capture_logs() as logs:
            result = await job.run_once()

        assert result is None

        t1_after = await get_transaction(t1.id)
        assert t1_after.status == TransactionStatus.CONFIRMED.value
        assert t1_after.balance_synced is True
        assert t1_after.confirmed_at is not None

        t2_after = await get_transaction(t2.id)
        assert t2_after.status == TransactionStatus.PENDING.value
        assert t2_after.tx_hash == "0xbbb"

        t3_after = await get_transaction(t3.id)
        assert t3_after.status == TransactionStatus.PENDING.value
        assert t3_after.poll_failures == 0

        # Exactly one status write and one balance write, both for T1
        assert len(write_spy["update_status"]) == 1
        assert write_spy["update_status"][0][0] == t1.id
        assert len(write_spy["update_balance"]) == 1
        assert write_spy["update_balance"][0][0] == w1.id

        # Other assets survive the balance refresh
        wallet = await get_wallet(w1.id)
        assert wallet.balance == {"native": "1.5", "usdc": "5"}
        assert (await get_wallet(w2.id)).balance == {"native": "0"}

        failures = events(logs, "reconcile.transaction_failed")
        assert len(failures) == 1
        assert failures[0]["transaction_id"] == t2.id
        assert failures[0]["log_level"] == "error"

        last_run = job.metrics.get_last_run()
        assert last_run.status == PassStatus.PARTIAL
        assert last_run.transactions_selected == 3
        assert last_run.transactions_confirmed == 1
        assert last_run.transactions_errored == 1
        assert last_run.transactions_pending == 1
        assert last_run.balances_synced == 1

    @pytest.mark.asyncio
    async def test_failed_receipt_skips_balance(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """A failed receipt is terminal and does not touch the wallet."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash="0xdead")
        chain_client.set_receipt("ethereum", "0xdead", ReceiptStatus.FAILED)

        job = make_job()
        await job.run_once()

        after = await get_transaction(tx.id)
        assert after.status == TransactionStatus.FAILED.value
        assert after.confirmed_at is None
        assert after.balance_synced is False
        assert chain_client.balance_calls == []
        assert job.metrics.get_last_run().transactions_failed == 1

    @pytest.mark.asyncio
    async def test_pending_is_looked_up_again_next_pass(
        self, make_job, chain_client, create_wallet, create_transaction, write_spy
    ):
        """A pending receipt causes no writes and is retried on the next pass."""
        wallet = await create_wallet()
        await create_transaction(wallet, tx_hash="0x111")

        job = make_job()
        await job.run_once()
        await job.run_once()

        assert chain_client.receipt_calls == [("ethereum", "0x111")] * 2
        assert write_spy["update_status"] == []
        assert write_spy["update_balance"] == []
        assert write_spy["record_poll_failure"] == []

    @pytest.mark.asyncio
    async def test_terminal_transactions_are_not_reprocessed(
        self, make_job, chain_client, create_wallet, create_transaction, write_spy
    ):
        """A second pass after confirmation does nothing for that transaction."""
        wallet = await create_wallet()
        await create_transaction(wallet, tx_hash="0x222")
        chain_client.set_receipt("ethereum", "0x222", ReceiptStatus.CONFIRMED)

        job = make_job()
        await job.run_once()
        await job.run_once()

        assert chain_client.receipt_calls == [("ethereum", "0x222")]
        assert len(write_spy["update_status"]) == 1
        assert len(write_spy["update_balance"]) == 1

    @pytest.mark.asyncio
    async def test_transactions_without_hash_are_ignored(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Transactions not yet broadcast are never looked up."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash=None)

        await make_job().run_once()

        assert chain_client.receipt_calls == []
        assert (await get_transaction(tx.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_empty_selection_is_a_no_op(self, make_job, chain_client, write_spy):
        """With nothing pending the pass makes no chain calls and no writes."""
        job = make_job()
        with capture_logs() as logs:
            await job.run_once()

        assert chain_client.receipt_calls == []
        assert all(not calls for calls in write_spy.values())
        assert events(logs, "reconcile.no_pending_transactions")
        assert job.metrics.get_last_run().status == PassStatus.SUCCESS


class TestIsolation:
    """One transaction's failure never affects the others."""

    @pytest.mark.asyncio
    async def test_failing_transaction_does_not_block_batch(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Every healthy transaction still reaches its final status."""
        wallet = await create_wallet()
        healthy = []
        for i in range(4):
            tx = await create_transaction(wallet, tx_hash=f"0xok{i}")
            chain_client.set_receipt("ethereum", f"0xok{i}", ReceiptStatus.CONFIRMED)
            healthy.append(tx)
        broken = await create_transaction(wallet, tx_hash="0xbroken")
        chain_client.fail_hash("0xbroken")

        await make_job().run_once()

        for tx in healthy:
            assert (await get_transaction(tx.id)).status == TransactionStatus.CONFIRMED.value
        assert (await get_transaction(broken.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_lookup_failure_logs_once_with_default_retry(
        self, make_job, chain_client, create_wallet, create_transaction
    ):
        """With shipped retry settings a failing lookup yields a single log entry."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash="0xdef")
        chain_client.fail_hash("0xdef")

        with capture_logs() as logs:
            await make_job(retry=RetryConfig()).run_once()

        noisy = [e for e in logs if e["log_level"] in ("warning", "error")]
        assert [e["event"] for e in noisy] == ["reconcile.transaction_failed"]
        assert noisy[0]["transaction_id"] == tx.id
        assert chain_client.receipt_calls == [("ethereum", "0xdef")]

    @pytest.mark.asyncio
    async def test_unexpected_client_exception_is_contained(
        self, make_job, create_wallet, create_transaction, get_transaction
    ):
        """Even a non-chain exception from the client stays transaction-local."""

        class ExplodingClient(MockChainClient):
            async def get_transaction_receipt(self, chain, tx_hash):
                raise RuntimeError("boom")

        wallet = await create_wallet()
        tx = await create_transaction(wallet)

        job = make_job(client=ExplodingClient())
        await job.run_once()

        after = await get_transaction(tx.id)
        assert after.status == TransactionStatus.PENDING.value
        assert after.poll_failures == 1
        assert "RuntimeError" in after.last_error

    @pytest.mark.asyncio
    async def test_malformed_metadata_is_transaction_local(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Missing or blank chain metadata is recorded as a lookup failure."""
        wallet = await create_wallet()
        no_chain = await create_transaction(wallet, metadata={})
        blank_chain = await create_transaction(wallet, metadata={"chain": "  "})
        not_a_dict = await create_transaction(wallet, metadata=["ethereum"])
        good = await create_transaction(wallet, tx_hash="0xgood")
        chain_client.set_receipt("ethereum", "0xgood", ReceiptStatus.CONFIRMED)

        with capture_logs() as logs:
            await make_job().run_once()

        for tx in (no_chain, blank_chain, not_a_dict):
            after = await get_transaction(tx.id)
            assert after.status == TransactionStatus.PENDING.value
            assert after.poll_failures == 1
            assert "MalformedTransactionError" in after.last_error

        assert (await get_transaction(good.id)).status == TransactionStatus.CONFIRMED.value
        assert chain_client.receipt_calls == [("ethereum", "0xgood")]
        assert len(events(logs, "reconcile.transaction_failed")) == 3

    @pytest.mark.asyncio
    async def test_status_write_failure_is_contained(
        self,
        make_job,
        chain_client,
        create_wallet,
        create_transaction,
        get_transaction,
        monkeypatch,
    ):
        """A store error on the status write leaves the transaction pending."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash="0x333")
        chain_client.set_receipt("ethereum", "0x333", ReceiptStatus.CONFIRMED)

        async def broken_update(self, *args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(TransactionRepository, "update_status", broken_update)

        await make_job().run_once()

        after = await get_transaction(tx.id)
        assert after.status == TransactionStatus.PENDING.value
        assert after.poll_failures == 1
        assert chain_client.balance_calls == []

    @pytest.mark.asyncio
    async def test_selection_failure_fails_the_pass(
        self, make_job, chain_client, monkeypatch
    ):
        """If selection fails the pass is recorded as failed and nothing else runs."""

        async def broken_select(self, *args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(TransactionRepository, "get_pollable", broken_select)

        job = make_job()
        with capture_logs() as logs:
            await job.run_once()

        assert events(logs, "reconcile.selection_failed")
        assert job.metrics.get_last_run().status == PassStatus.FAILED
        assert chain_client.receipt_calls == []


class TestFailureBackoff:
    """Failed lookups are pushed out and eventually parked."""

    @pytest.mark.asyncio
    async def test_failure_defers_next_lookup(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """A failed transaction is not selected again inside its backoff window."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash="0xslow")
        chain_client.fail_hash("0xslow")

        job = make_job(failure_backoff=FailureBackoffConfig(initial_delay_seconds=60))
        await job.run_once()
        await job.run_once()

        after = await get_transaction(tx.id)
        assert after.poll_failures == 1
        assert after.next_poll_at is not None
        assert after.last_polled_at is not None
        assert chain_client.receipt_calls == [("ethereum", "0xslow")]

    @pytest.mark.asyncio
    async def test_repeated_failures_park_transaction_as_stuck(
        self,
        make_job,
        chain_client,
        create_wallet,
        create_transaction,
        get_transaction,
        session_factory,
    ):
        """After the failure ceiling the transaction is STUCK until requeued."""
        wallet = await create_wallet()
        tx = await create_transaction(wallet, tx_hash="0xstuck")
        chain_client.fail_hash("0xstuck")

        job = make_job(
            failure_backoff=FailureBackoffConfig(
                initial_delay_seconds=0, max_poll_failures=2
            )
        )
        with capture_logs() as logs:
            await job.run_once()
            await job.run_once()
            await job.run_once()

        after = await get_transaction(tx.id)
        assert after.status == TransactionStatus.STUCK.value
        assert after.poll_failures == 2
        assert len(chain_client.receipt_calls) == 2
        assert len(events(logs, "reconcile.transaction_stuck")) == 1

        async with UnitOfWork(session_factory=session_factory) as uow:
            requeued = await uow.transactions.requeue(tx.id)
            await uow.commit()
        assert requeued.status == TransactionStatus.PENDING.value
        assert requeued.poll_failures == 0

        chain_client.clear_failures()
        chain_client.set_receipt("ethereum", "0xstuck", ReceiptStatus.CONFIRMED)
        await job.run_once()

        assert (await get_transaction(tx.id)).status == TransactionStatus.CONFIRMED.value


class TestCircuitBreaker:
    """A failing chain is short-circuited without penalising transactions."""

    @pytest.mark.asyncio
    async def test_open_circuit_defers_without_counting(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Once an unreachable chain's circuit opens, its other transactions wait."""
        eth_wallet = await create_wallet(chain="ethereum")
        poly_wallet = await create_wallet(chain="polygon")
        first = await create_transaction(eth_wallet, tx_hash="0xe1")
        second = await create_transaction(eth_wallet, tx_hash="0xe2")
        other_chain = await create_transaction(poly_wallet, tx_hash="0xp1")
        chain_client.fail_hash("0xe1", ChainConnectionError("node down"))
        chain_client.fail_hash("0xe2", ChainConnectionError("node down"))
        chain_client.set_receipt("polygon", "0xp1", ReceiptStatus.CONFIRMED)

        job = make_job(
            circuit_breaker=CircuitBreakerConfig(failure_threshold=1, timeout=60)
        )
        await job.run_once()

        failures = sorted(
            [
                (await get_transaction(first.id)).poll_failures,
                (await get_transaction(second.id)).poll_failures,
            ]
        )
        assert failures == [0, 1]
        assert (
            await get_transaction(other_chain.id)
        ).status == TransactionStatus.CONFIRMED.value

        last_run = job.metrics.get_last_run()
        assert last_run.transactions_deferred == 1
        assert last_run.transactions_errored == 1
        assert job.get_status()["circuit_breakers"]["ethereum"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_bad_hashes_do_not_open_circuit(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Per-hash errors beyond the threshold leave the chain's other lookups alone."""
        wallet = await create_wallet()
        bad = []
        for i in range(5):
            bad.append(await create_transaction(wallet, tx_hash=f"0xbad{i}"))
            chain_client.fail_hash(f"0xbad{i}")
        good = await create_transaction(wallet, tx_hash="0xgood")
        chain_client.set_receipt("ethereum", "0xgood", ReceiptStatus.CONFIRMED)

        job = make_job(circuit_breaker=CircuitBreakerConfig())
        await job.run_once()

        assert (await get_transaction(good.id)).status == TransactionStatus.CONFIRMED.value
        for tx in bad:
            assert (await get_transaction(tx.id)).poll_failures == 1

        last_run = job.metrics.get_last_run()
        assert last_run.transactions_deferred == 0
        assert last_run.transactions_errored == 5
        assert job.get_status()["circuit_breakers"]["ethereum"]["state"] == "closed"


class TestMutualExclusion:
    """Passes never overlap, within a process or across processes."""

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_skips_pass(
        self, make_job, chain_client, create_wallet, create_transaction, session_factory
    ):
        """A lease held by another instance makes the pass a no-op."""
        wallet = await create_wallet()
        await create_transaction(wallet)

        job = make_job()
        async with UnitOfWork(session_factory=session_factory) as uow:
            assert await uow.leases.try_acquire(
                job.config.lease_name, "other-host-1", 300
            )
            await uow.commit()

        await job.run_once()

        assert chain_client.receipt_calls == []
        last_run = job.metrics.get_last_run()
        assert last_run.status == PassStatus.SKIPPED
        assert last_run.skip_reason == "lease_held"

    @pytest.mark.asyncio
    async def test_lease_released_after_pass(
        self, make_job, create_wallet, create_transaction, session_factory
    ):
        """The lease row is removed once the pass ends."""
        wallet = await create_wallet()
        await create_transaction(wallet)

        job = make_job()
        await job.run_once()

        async with UnitOfWork(session_factory=session_factory) as uow:
            assert not await uow.leases.exists(name=job.config.lease_name)

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(
        self, make_job, create_wallet, create_transaction
    ):
        """A second run_once while one is in flight returns without work."""
        client = MockChainClient(latency_ms=200)
        wallet = await create_wallet()
        await create_transaction(wallet, tx_hash="0xlate")

        job = make_job(client=client)
        first = asyncio.create_task(job.run_once())
        await asyncio.sleep(0.05)
        assert job.is_running_pass

        await job.run_once()
        await first

        assert client.receipt_calls == [("ethereum", "0xlate")]
        history = job.metrics.get_history()
        assert [run.status for run in history] == [PassStatus.SUCCESS, PassStatus.SKIPPED]
        assert history[1].skip_reason == "pass_in_progress"

    @pytest.mark.asyncio
    async def test_long_pass_keeps_its_lease(
        self, make_job, make_config, create_wallet, create_transaction, session_factory
    ):
        """A pass outliving the lease TTL renews it, so a second instance skips."""
        client = MockChainClient(latency_ms=100)
        wallet = await create_wallet()
        for i in range(4):
            await create_transaction(wallet, tx_hash=f"0xlong{i}")
            client.set_receipt("ethereum", f"0xlong{i}", ReceiptStatus.CONFIRMED)

        first = make_job(client=client, lease_ttl_seconds=0.3)
        second = ReconciliationJob(
            client=client,
            config=make_config(lease_ttl_seconds=0.3),
            session_factory=session_factory,
            instance_id="other-instance",
        )

        running = asyncio.create_task(first.run_once())
        await asyncio.sleep(0.45)
        await second.run_once()
        await running

        assert second.metrics.get_last_run().status == PassStatus.SKIPPED
        assert second.metrics.get_last_run().skip_reason == "lease_held"
        assert first.metrics.get_last_run().transactions_confirmed == 4
        assert len(client.receipt_calls) == 4

    @pytest.mark.asyncio
    async def test_lost_lease_stops_the_batch(
        self, make_job, create_wallet, create_transaction, get_transaction, session_factory
    ):
        """If another instance takes over an expired lease, the pass stops early."""
        client = MockChainClient(latency_ms=150)
        wallet = await create_wallet()
        txs = []
        for i in range(3):
            txs.append(await create_transaction(wallet, tx_hash=f"0xtaken{i}"))
            client.set_receipt("ethereum", f"0xtaken{i}", ReceiptStatus.CONFIRMED)

        job = make_job(client=client, lease_ttl_seconds=0.05)
        with capture_logs() as logs:
            running = asyncio.create_task(job.run_once())
            await asyncio.sleep(0.15)
            async with UnitOfWork(session_factory=session_factory) as uow:
                assert await uow.leases.try_acquire(
                    job.config.lease_name, "other-instance", 300
                )
                await uow.commit()
            await running

        assert len(client.receipt_calls) == 1
        statuses = [(await get_transaction(tx.id)).status for tx in txs]
        assert statuses.count(TransactionStatus.CONFIRMED.value) == 1
        assert statuses.count(TransactionStatus.PENDING.value) == 2
        assert len(events(logs, "reconcile.lease_lost")) == 1
        assert job.metrics.get_last_run().status == PassStatus.PARTIAL

        # The other holder's lease survives our release
        async with UnitOfWork(session_factory=session_factory) as uow:
            assert await uow.leases.exists(
                name=job.config.lease_name, holder="other-instance"
            )


class TestConcurrency:
    """Bounded parallel resolution within a pass."""

    @pytest.mark.asyncio
    async def test_parallel_resolution_confirms_all(
        self, make_job, create_wallet, create_transaction, get_transaction, get_wallet
    ):
        """With concurrency > 1 every transaction still reaches its final status."""
        client = MockChainClient(latency_ms=20)
        wallet = await create_wallet(balance={"native": "0", "usdt": "7"})
        client.set_balance("ethereum", wallet.address, "3")
        transactions = []
        for i in range(3):
            tx = await create_transaction(wallet, tx_hash=f"0xpar{i}")
            client.set_receipt("ethereum", f"0xpar{i}", ReceiptStatus.CONFIRMED)
            transactions.append(tx)

        job = make_job(client=client, concurrency=3)
        await job.run_once()

        for tx in transactions:
            after = await get_transaction(tx.id)
            assert after.status == TransactionStatus.CONFIRMED.value
        assert (await get_wallet(wallet.id)).balance == {"native": "3", "usdt": "7"}
        assert job.metrics.get_last_run().transactions_confirmed == 3


class TestBalanceRefresh:
    """Balance refresh failures after a confirmation."""

    @pytest.mark.asyncio
    async def test_balance_failure_keeps_confirmation_and_is_swept(
        self,
        make_job,
        chain_client,
        create_wallet,
        create_transaction,
        get_transaction,
        get_wallet,
    ):
        """The status stays CONFIRMED and a later pass refreshes the wallet."""
        wallet = await create_wallet(balance={"native": "0.1"})
        tx = await create_transaction(wallet, tx_hash="0x444")
        chain_client.set_receipt("ethereum", "0x444", ReceiptStatus.CONFIRMED)
        chain_client.set_balance("ethereum", wallet.address, "9")
        chain_client.fail_address(wallet.address)

        job = make_job()
        with capture_logs() as logs:
            await job.run_once()

        after = await get_transaction(tx.id)
        assert after.status == TransactionStatus.CONFIRMED.value
        assert after.balance_synced is False
        assert (await get_wallet(wallet.id)).balance == {"native": "0.1"}
        assert len(events(logs, "balance.sync_failed")) == 1

        chain_client.clear_failures()
        await job.run_once()

        assert (await get_transaction(tx.id)).balance_synced is True
        assert (await get_wallet(wallet.id)).balance == {"native": "9"}

    @pytest.mark.asyncio
    async def test_sweep_can_be_disabled(
        self, make_job, chain_client, create_wallet, create_transaction, get_transaction
    ):
        """Without the sweep an unsynced confirmation stays unsynced."""
        wallet = await create_wallet()
        tx = await create_transaction(
            wallet, status=TransactionStatus.CONFIRMED, tx_hash="0x555"
        )

        await make_job(balance_sweep_enabled=False).run_once()

        assert (await get_transaction(tx.id)).balance_synced is False
        assert chain_client.balance_calls == []


class TestStatusReporting:
    """Job status and metrics views."""

    @pytest.mark.asyncio
    async def test_get_status_and_metrics(
        self, make_job, chain_client, create_wallet, create_transaction
    ):
        """Status reports the last pass; metrics aggregate history."""
        wallet = await create_wallet()
        await create_transaction(wallet, tx_hash="0x666")
        chain_client.set_receipt("ethereum", "0x666", ReceiptStatus.CONFIRMED)

        job = make_job()
        status = job.get_status()
        assert status["last_run"] is None
        assert status["pass_in_progress"] is False

        await job.run_once()

        status = job.get_status()
        assert status["last_pass_time"] is not None
        assert status["last_run"]["transactions_confirmed"] == 1
        assert status["config"]["source"] == "mock"
        assert status["instance_id"] == "test-instance"

        metrics = job.get_metrics()
        assert metrics["aggregate"]["total_runs"] == 1
        assert metrics["aggregate"]["total_confirmed"] == 1
        assert metrics["success_rate"] == 1.0
        assert len(metrics["recent_runs"]) == 1
