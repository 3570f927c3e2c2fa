"""
Reconciliation CLI commands.

Provides command-line interface for running passes, running the
scheduler, seeding demo data and requeueing stuck transactions.
"""

import asyncio
import sys
from typing import Optional

import structlog

from reconciler.core.config import get_settings
from reconciler.core.logging import configure_logging
from reconciler.db.models.transaction import TransactionStatus
from reconciler.db.seed import seed_demo_data
from reconciler.db.unit_of_work import UnitOfWork
from reconciler.reconciliation.config import get_reconciler_config
from reconciler.reconciliation.job import ReconciliationJob
from reconciler.reconciliation.scheduler import ReconciliationScheduler

logger = structlog.get_logger()


def print_run(run: dict):
    """Pretty print one pass."""
    print(f"Run ID: {run['run_id']}")
    print(f"Status: {run['status']}")
    if run.get("skip_reason"):
        print(f"Skipped: {run['skip_reason']}")
        return
    print(f"Selected: {run['transactions_selected']}")
    print(f"Confirmed: {run['transactions_confirmed']}")
    print(f"Failed: {run['transactions_failed']}")
    print(f"Still pending: {run['transactions_pending']}")
    if run["transactions_errored"]:
        print(f"Errored: {run['transactions_errored']}")
    if run["transactions_stuck"]:
        print(f"Stuck: {run['transactions_stuck']}")
    print(f"Balances synced: {run['balances_synced']}")
    print(f"Duration: {run['duration_seconds']:.2f}s")


def print_metrics(metrics: dict, hours: Optional[int] = None):
    """Pretty print metrics."""
    print("\n=== Reconciliation Metrics ===")
    print(f"(Last {hours} hours)\n" if hours else "(All history)\n")

    agg = metrics["aggregate"]
    print(f"Total Runs: {agg['total_runs']}")
    print(f"Successful: {agg['successful_runs']}")
    print(f"Partial: {agg['partial_runs']}")
    print(f"Failed: {agg['failed_runs']}")
    print(f"Skipped: {agg['skipped_runs']}")
    print(f"Success Rate: {metrics['success_rate']:.1%}")
    print(f"\nConfirmed: {agg['total_confirmed']}")
    print(f"Failed on chain: {agg['total_failed']}")
    print(f"Errors: {agg['total_errors']}")
    print(f"\nAvg Duration: {agg['avg_duration_seconds']:.2f}s")
    print()


async def poll_command():
    """Run a single pass manually."""
    print("Starting reconciliation pass...")
    job = ReconciliationJob()
    await job.run_once()

    run = job.metrics.get_last_run()
    if run is None:
        print("No pass recorded.")
        return 1

    print("\nPass finished!")
    print_run(run.to_dict())
    print_metrics(job.get_metrics())
    return 0 if run.status.value in ("success", "partial", "skipped") else 1


async def run_command():
    """Run the scheduler continuously."""
    config = get_reconciler_config()
    print("Starting reconciliation scheduler...")
    print(f"Interval: {config.interval_ms} ms")
    print(f"Batch size: {config.batch_size}")
    print("Press Ctrl+C to stop\n")

    scheduler = ReconciliationScheduler(ReconciliationJob(config=config), config)
    await scheduler.start()
    try:
        while scheduler.is_running:
            await asyncio.sleep(1)
    finally:
        await scheduler.stop()
        print("Scheduler stopped.")
    return 0


async def seed_command(count: int):
    """Insert demo wallets and pending transactions."""
    result = await seed_demo_data(transactions_per_wallet=count)
    print(f"Wallets created: {result['wallets']}")
    print(f"Transactions created: {result['transactions']}")
    return 0


async def requeue_command(transaction_id: str):
    """Put a stuck transaction back into polling."""
    async with UnitOfWork() as uow:
        transaction = await uow.transactions.requeue(transaction_id)
        await uow.commit()

    if transaction is None:
        print(
            f"Transaction {transaction_id} not found or not {TransactionStatus.STUCK.value}"
        )
        return 1

    logger.info("reconcile.transaction_requeued", transaction_id=transaction_id)
    print(f"Transaction {transaction_id} requeued")
    return 0


def main():
    """Main CLI entry point."""
    if len(sys.argv) < 2:
        print("Usage: python -m reconciler.reconciliation.cli <command> [options]")
        print("\nCommands:")
        print("  poll               Run a single reconciliation pass")
        print("  run                Run the scheduler continuously")
        print("  seed [count]       Insert demo wallets with N pending transactions each")
        print("  requeue <tx_id>    Requeue a stuck transaction")
        print("\nExamples:")
        print("  python -m reconciler.reconciliation.cli poll")
        print("  python -m reconciler.reconciliation.cli seed 5")
        print("  python -m reconciler.reconciliation.cli requeue 3f2c...")
        return 1

    configure_logging(get_settings().ENV)
    command = sys.argv[1]

    try:
        if command == "poll":
            return asyncio.run(poll_command())
        elif command == "run":
            return asyncio.run(run_command())
        elif command == "seed":
            count = int(sys.argv[2]) if len(sys.argv) > 2 else 3
            return asyncio.run(seed_command(count))
        elif command == "requeue":
            if len(sys.argv) < 3:
                print("Usage: python -m reconciler.reconciliation.cli requeue <tx_id>")
                return 1
            return asyncio.run(requeue_command(sys.argv[2]))
        else:
            print(f"Unknown command: {command}")
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except Exception as e:
        print(f"Error: {str(e)}")
        logger.exception("cli_error", command=command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
