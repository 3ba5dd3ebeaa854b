from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="finledger: provider sync into a local ledger")


def _setup(verbose: bool = False) -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_day(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        typer.echo(f"Invalid date {value!r} (expected YYYY-MM-DD)", err=True)
        raise typer.Exit(code=2)


def _echo_run(run) -> None:
    typer.echo(
        json.dumps(
            {"sync_run_id": run.id, "status": run.status, "error": run.error, "stats": run.sync_stats},
            indent=2,
            default=str,
        )
    )


@app.command("init-db")
def init_db_cmd():
    _setup()
    from finledger.db.init_db import init_db
    from finledger.db.session import get_database_url

    init_db()
    typer.echo(f"Initialized {get_database_url()}")


@app.command("add-credential")
def add_credential_cmd(
    connection_id: int = typer.Option(..., help="ProviderConnection id"),
    key: str = typer.Option(..., help="Credential key, e.g. access_url or access_token"),
    value: str = typer.Option(..., prompt=True, hide_input=True),
):
    _setup()
    from finledger.core.credential_store import CredentialError, mask_secret, upsert_credential
    from finledger.db.session import get_session

    with get_session() as session:
        try:
            upsert_credential(session, connection_id=connection_id, key=key, plaintext=value)
        except CredentialError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=1)
        session.commit()
    typer.echo(f"Stored {key}={mask_secret(value)} for connection {connection_id}")


@app.command("sync")
def sync_cmd(
    connection_id: int = typer.Option(..., help="ProviderConnection id"),
    snapshot_file: Optional[Path] = typer.Option(None, exists=True, dir_okay=False, help="Provider snapshot JSON"),
    start: Optional[str] = typer.Option(None, help="Window start YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, help="Window end YYYY-MM-DD"),
    actor: str = typer.Option("cli", help="Audit actor"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    _setup(verbose)
    from finledger.core.sync_runner import SyncConfigError, SyncInProgressError, run_sync
    from finledger.db.session import get_session
    from finledger.importers.adapters import ReplayClient

    client = ReplayClient.from_file(snapshot_file) if snapshot_file else None
    with get_session() as session:
        try:
            run = run_sync(
                session,
                connection_id=connection_id,
                window_start_date=_parse_day(start),
                window_end_date=_parse_day(end),
                client=client,
                actor=actor,
            )
        except (SyncConfigError, SyncInProgressError) as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=1)
        _echo_run(run)
        if run.status != "completed":
            raise typer.Exit(code=1)


@app.command("replay")
def replay_cmd(
    connection_id: int = typer.Option(..., help="ProviderConnection id"),
    actor: str = typer.Option("cli", help="Audit actor"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Re-run the import against the latest stored snapshot for a connection."""
    _setup(verbose)
    from finledger.core.sync_runner import SyncConfigError, SyncInProgressError, latest_snapshot_client, run_sync
    from finledger.db.session import get_session

    with get_session() as session:
        try:
            client = latest_snapshot_client(session, connection_id=connection_id)
            run = run_sync(session, connection_id=connection_id, client=client, actor=actor)
        except (SyncConfigError, SyncInProgressError) as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=1)
        _echo_run(run)


@app.command("materialize-holdings")
def materialize_holdings_cmd(
    account_id: int = typer.Option(..., help="Account id"),
    strategy: str = typer.Option("forward", help="forward|reverse"),
):
    _setup()
    from finledger.core.holdings import HoldingMaterializer
    from finledger.db.models import Account
    from finledger.db.session import get_session

    with get_session() as session:
        account = session.get(Account, account_id)
        if account is None:
            typer.echo(f"Account {account_id} not found", err=True)
            raise typer.Exit(code=2)
        try:
            rows = HoldingMaterializer(session, account, strategy=strategy).materialize_holdings()
        except ValueError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=2)
        session.commit()
        typer.echo(f"Materialized {len(rows)} holdings for account {account_id}")


@app.command("reconcile-pending")
def reconcile_pending_cmd(
    account_id: Optional[int] = typer.Option(None, help="Limit to one account"),
    dry_run: bool = typer.Option(False, help="Report without excluding"),
    date_window: int = typer.Option(8, help="Days after the pending date to look for the posted twin"),
):
    _setup()
    from finledger.core.pending import reconcile_pending_duplicates
    from finledger.db.models import Account
    from finledger.db.session import get_session

    with get_session() as session:
        account = None
        if account_id is not None:
            account = session.get(Account, account_id)
            if account is None:
                typer.echo(f"Account {account_id} not found", err=True)
                raise typer.Exit(code=2)
        stats = reconcile_pending_duplicates(session, account=account, dry_run=dry_run, date_window=date_window)
        if not dry_run:
            session.commit()
        typer.echo(json.dumps(stats, indent=2, default=str))


if __name__ == "__main__":
    app()
