"""
Management commands for the LicenseFlow backend.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from licenseflow.container import Container
from licenseflow.core.config import load_settings
from licenseflow.core.logging import setup_logging, get_logger

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="LicenseFlow management commands")

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def _run(coro_factory, with_queues: bool = False):
    """Start the services, run one coroutine against them, shut down."""
    settings = load_settings()
    setup_logging(settings)

    async def _main():
        container = Container(settings)
        try:
            await container.startup(with_queues=with_queues)
            return await coro_factory(container)
        finally:
            await container.shutdown()

    return asyncio.run(_main())


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    return alembic_cfg


@app.command("init-db")
def init_db():
    """Create all tables directly from the models."""
    async def _init(container: Container):
        await container.database.create_tables()
        console.print("✅ Database initialized successfully!")

    _run(_init)


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(_alembic_config(), revision)
    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def health():
    """Check database and Redis connectivity."""
    async def _health(container: Container):
        table = Table(title="Service Health")
        table.add_column("Component", style="cyan")
        table.add_column("Status", style="green")

        database_ok = await container.database.health_check()
        redis_status = await container.redis.health_check()
        table.add_row("Database", "✅ Connected" if database_ok else "❌ Disconnected")
        table.add_row("Redis", "✅ Connected" if redis_status["status"] == "healthy" else f"❌ {redis_status.get('error')}")
        console.print(table)
        return database_ok and redis_status["status"] == "healthy"

    if not _run(_health, with_queues=True):
        sys.exit(1)


@app.command("run-earnings")
def run_earnings():
    """Run one daily earnings cycle in this process."""
    async def _earnings(container: Container):
        result = await container.earnings_processor.run_daily_earnings_cycle()

        table = Table(title="Daily Earnings Cycle")
        table.add_column("Processed", style="green")
        table.add_column("Completed", style="cyan")
        table.add_column("Total", style="white")
        table.add_row(str(result.processed), str(result.completed), str(result.total))
        console.print(table)

    _run(_earnings)


@app.command("process-license")
def process_license(license_id: str):
    """Accrue the next due day for one license."""
    async def _process(container: Container):
        result = await container.earnings_processor.process_single_license(license_id)
        console.print(f"License {license_id}: [bold]{result.outcome.value}[/bold]", end="")
        if result.accrued:
            console.print(f" (day {result.day_index}, {result.amount} USDT)")
        else:
            console.print()

    _run(_process)


@app.command("toggle-pause")
def toggle_pause(
    license_id: str,
    paused: Optional[bool] = typer.Option(None, "--paused/--unpaused", help="Set explicitly instead of flipping"),
):
    """Pause or resume ledger credits for a license."""
    async def _toggle(container: Container):
        new_value = await container.earnings_processor.toggle_pause_potential(license_id, paused)
        console.print(f"⏯️ License {license_id} pause_potential = {new_value}")

    _run(_toggle)


@app.command("validate-order")
def validate_order(order_id: str):
    """Validate an order's payment now, without the queue."""
    async def _validate(container: Container):
        # Final-attempt semantics: a failure goes to manual review instead of raising
        outcome = await container.validation_processor.validate_order(
            order_id,
            retry_count=container.settings.validation_max_retries
        )
        console.print(f"Order {order_id}: [bold]{outcome.value}[/bold]")

    _run(_validate)


@app.command("enqueue-validation")
def enqueue_validation(
    order_id: Optional[str] = typer.Argument(None, help="Order to validate; omit to sweep pending orders"),
    delay: float = typer.Option(0, help="Delay in seconds"),
):
    """Queue validation for one order, or for all pending paid orders."""
    async def _enqueue(container: Container):
        if order_id:
            job = await container.worker_pool.schedule_validation(order_id, delay=delay)
            console.print(f"📥 Validation queued for {order_id} (job {job.id})")
        else:
            count = await container.worker_pool.queue_pending_validations()
            console.print(f"📥 Queued {count} orders for validation")

    _run(_enqueue, with_queues=True)


@app.command("remove-validation")
def remove_validation(order_id: str):
    """Cancel an outstanding validation job."""
    async def _remove(container: Container):
        removed = await container.worker_pool.remove_validation(order_id)
        console.print("🗑️ Removed" if removed else "Nothing outstanding for this order")

    _run(_remove, with_queues=True)


@app.command("queue-stats")
def queue_stats():
    """Show job counts for every queue."""
    async def _stats(container: Container):
        stats = await container.worker_pool.get_stats()

        table = Table(title="Queues")
        for column in ("Queue", "Waiting", "Active", "Delayed", "Completed", "Failed", "Backlog", "Paused"):
            table.add_column(column)
        for name, values in stats.items():
            table.add_row(
                name,
                str(values["waiting"]),
                str(values["active"]),
                str(values["delayed"]),
                str(values["completed"]),
                str(values["failed"]),
                str(values["total"]),
                "⏸️" if values["paused"] else "",
            )
        console.print(table)

    _run(_stats, with_queues=True)


@app.command()
def pause(queue: Optional[str] = typer.Argument(None, help="Queue name; all queues if omitted")):
    """Pause job delivery."""
    async def _pause(container: Container):
        await container.worker_pool.pause(queue)
        console.print(f"⏸️ Paused {queue or 'all queues'}")

    _run(_pause, with_queues=True)


@app.command()
def resume(queue: Optional[str] = typer.Argument(None, help="Queue name; all queues if omitted")):
    """Resume job delivery."""
    async def _resume(container: Container):
        await container.worker_pool.resume(queue)
        console.print(f"▶️ Resumed {queue or 'all queues'}")

    _run(_resume, with_queues=True)


@app.command()
def cleanup():
    """Trim completed and failed job history."""
    async def _cleanup(container: Container):
        removed = await container.worker_pool.cleanup()
        for name, counts in removed.items():
            console.print(f"🧹 {name}: {counts['completed']} completed, {counts['failed']} failed removed")

    _run(_cleanup, with_queues=True)


@app.command("start-worker")
def start_worker(
    workers: bool = typer.Option(True, "--workers/--no-workers", help="Run queue workers"),
    scheduler: bool = typer.Option(True, "--scheduler/--no-scheduler", help="Run periodic triggers"),
):
    """Run workers and the scheduler until interrupted."""
    from licenseflow.scheduler.main import main

    asyncio.run(main(run_workers=workers, run_scheduler=scheduler))


if __name__ == "__main__":
    app()
