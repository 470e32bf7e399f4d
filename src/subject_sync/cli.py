import asyncio
import json
import subprocess
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from warehouse_client import AsyncWarehouse

from .audit import tail
from .dlq import DeadLetterStore, dump_entries
from .errors import ConfigurationError
from .models import DeadLetterStatus, utc_now
from .pseudonymizer import Pseudonymizer, SaltConfig
from .settings import get_settings

app = typer.Typer(help="subject-sync operational CLI (migrations, dead letters, audit)")


def _dlq_path(path: Optional[str]) -> str:
    p = path or get_settings().dlq_path
    if not p:
        logger.error("No dead-letter file: pass --path or set SUBJECT_SYNC_DLQ_PATH")
        raise typer.Exit(code=1)
    return p


@app.command()
def migrate(target: str = "head"):
    """Run Alembic migrations for the warehouse tables (default: head)."""
    try:
        logger.info(f"Running migrations to {target}")
        result = subprocess.run(
            ["alembic", "upgrade", target],
            capture_output=True,
            text=True,
            cwd=Path(__file__).parent.parent.parent,
        )
        if result.returncode == 0:
            logger.success(f"Successfully migrated to {target}")
            if result.stdout:
                logger.info(f"Migration output: {result.stdout}")
        else:
            logger.error(f"Migration failed: {result.stderr}")
            sys.exit(1)
    except OSError as e:
        logger.error(f"Failed to run migrations: {e}")
        sys.exit(1)


@app.command()
def pseudonymize(subject_id: str = typer.Argument(..., help="Raw subject id")):
    """Print the warehouse pseudonym(s) a subject currently maps to."""
    try:
        p = Pseudonymizer(SaltConfig.from_settings(get_settings()))
    except ConfigurationError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)
    out = {
        "salt_version": p.salt_version,
        "pseudonym": p.pseudonymize(subject_id),
        "candidates": p.candidates(subject_id, utc_now()),
    }
    typer.echo(json.dumps(out, indent=2))


@app.command("dlq-list")
def dlq_list(
    status: Optional[DeadLetterStatus] = typer.Option(None, "--status"),
    path: Optional[str] = typer.Option(None, "--path", help="Dead-letter NDJSON file"),
):
    """List dead-letter entries (latest state per record)."""
    store = DeadLetterStore(_dlq_path(path), mkdirs=False)
    entries = store.list(status)
    if entries:
        typer.echo(dump_entries(entries))
    logger.info(f"{len(entries)} entries; totals {store.counts()}")


@app.command("dlq-resolve")
def dlq_resolve(
    table: str = typer.Argument(...),
    subject_id: str = typer.Argument(...),
    record_id: str = typer.Argument(...),
    note: str = typer.Option("resolved manually", "--note"),
    path: Optional[str] = typer.Option(None, "--path", help="Dead-letter NDJSON file"),
):
    """Mark one dead-letter entry resolved."""
    store = DeadLetterStore(_dlq_path(path), mkdirs=False)
    key = (table, subject_id, record_id)
    if store.get(key) is None:
        logger.error(f"No dead-letter entry for {table}/{record_id}")
        raise typer.Exit(code=1)
    entry = asyncio.run(store.resolve(key, note=note))
    typer.echo(json.dumps(entry.model_dump(mode="json"), indent=2))
    logger.success(f"Resolved {table}/{record_id}")


@app.command("audit-tail")
def audit_tail(
    n: int = typer.Option(20, "-n", help="Number of entries"),
    path: Optional[str] = typer.Option(None, "--path", help="Audit NDJSON file"),
):
    """Show the last entries of the erasure audit log."""
    p = path or get_settings().audit_path
    if not p:
        logger.error("No audit file: pass --path or set SUBJECT_SYNC_AUDIT_PATH")
        raise typer.Exit(code=1)
    for entry in tail(p, n):
        typer.echo(entry.model_dump_json())


@app.command("warehouse-ping")
def warehouse_ping(
    dsn: Optional[str] = typer.Option(None, "--dsn", envvar="SUBJECT_SYNC_WAREHOUSE_DSN"),
):
    """Check warehouse connectivity."""
    if not dsn:
        logger.error("No warehouse DSN: pass --dsn or set SUBJECT_SYNC_WAREHOUSE_DSN")
        raise typer.Exit(code=1)

    async def _ping() -> bool:
        wh = AsyncWarehouse({"dsn": dsn})
        await wh.open()
        try:
            return await wh.health()
        finally:
            await wh.aclose()

    ok = asyncio.run(_ping())
    typer.echo(json.dumps({"ok": ok}, indent=2))
    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
