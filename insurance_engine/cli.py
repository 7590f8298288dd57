"""
CLI entrypoint for the insurance engine.

Provides commands to run the engine, initialise the database, run a single
sweep, inspect a contract and print aggregate stats.
"""
import asyncio
from pathlib import Path
from typing import List, Optional

import typer

from insurance_engine.config.config import Config, load_config
from insurance_engine.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="insurance-engine",
    help="Price-indexed insurance lifecycle engine",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path], log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Failed to load configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _parse_pair(value: str):
    from insurance_engine.domain.models import QuoteUnit

    asset, _, unit = value.upper().partition(":")
    if not asset or not unit:
        raise typer.BadParameter(f"Expected ASSET:UNIT, got {value}")
    try:
        return asset, QuoteUnit(unit)
    except ValueError:
        raise typer.BadParameter(f"Unknown unit {unit}")


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the engine: ticker feed, reconciliation loops, ledger listener.

    Example:
        insurance-engine run --config insurance_engine/config/config.yaml
    """
    config = _load(config_path, log_file)

    from insurance_engine.app import EngineApp

    async def run_engine():
        engine = EngineApp(config)
        await engine.run()

    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("Engine stopped by user")


@app.command("init-db")
def init_db_command(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    pair: List[str] = typer.Option([], "--pair", help="Seed a pair as ASSET:UNIT (repeatable)"),
):
    """
    Create tables and optionally seed pairs with the default change-ratio table.

    Example:
        insurance-engine init-db --pair BTC:USDT --pair ETH:USDT
    """
    config = _load(config_path)

    from insurance_engine.constants import DEFAULT_DAY_CHANGE_RATIO
    from insurance_engine.data.pair_config import build_day_change_ratios
    from insurance_engine.domain.models import Pair
    from insurance_engine.storage.db import init_db
    from insurance_engine.storage.repository import SqlContractStore

    db = init_db(config.data.database_url, echo=config.data.echo_sql)
    store = SqlContractStore(db)
    ratios = build_day_change_ratios(DEFAULT_DAY_CHANGE_RATIO)
    for item in pair:
        asset, unit = _parse_pair(item)
        store.save_pair(Pair(
            symbol=f"{asset}{unit.value}",
            asset=asset,
            unit=unit,
            day_change_ratios=ratios,
        ))
        typer.echo(f"Seeded pair {asset}{unit.value}")
    typer.secho("Database ready", fg=typer.colors.GREEN)


@app.command()
def sweep(
    which: str = typer.Argument("all", help="pending, active or all"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Run one reconciliation sweep and print its summary."""
    if which not in ("pending", "active", "all"):
        raise typer.BadParameter("which must be pending, active or all")
    config = _load(config_path)

    from insurance_engine.app import EngineApp

    async def run_sweeps():
        engine = EngineApp(config)
        try:
            if which in ("pending", "all"):
                typer.echo(f"pending: {await engine.scheduler.run_pending_sweep()}")
            if which in ("active", "all"):
                typer.echo(f"active:  {await engine.scheduler.run_active_sweep()}")
        finally:
            await engine.shutdown()

    asyncio.run(run_sweeps())


@app.command()
def show(
    contract_id: str = typer.Argument(..., help="Contract id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print a contract and its state log."""
    config = _load(config_path)

    from insurance_engine.storage.db import Database
    from insurance_engine.storage.repository import SqlContractStore

    contract = SqlContractStore(Database(config.data.database_url)).get(contract_id)
    if contract is None:
        typer.secho(f"Contract {contract_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo("=" * 60)
    typer.echo(f"{contract.id}  {contract.symbol}  {contract.side.value}  {contract.state.value}")
    typer.echo("=" * 60)
    typer.echo(f"Margin:       {contract.margin}   Covered: {contract.q_covered}")
    typer.echo(f"Claim price:  {contract.p_claim}   Open: {contract.p_open}")
    typer.echo(f"Liquidation:  {contract.p_liquidation}   Refund: {contract.p_refund}")
    typer.echo(f"Expires:      {contract.expired_at}   Closed: {contract.closed_at}")
    if contract.invalid_reason:
        typer.echo(f"Invalid:      {contract.invalid_reason.value}")
    typer.echo("-" * 60)
    for entry in contract.state_logs:
        line = f"{entry.time.isoformat()}  {entry.state.value:<15} tx={entry.tx_hash or '-'}"
        if entry.error:
            line += f"  error={entry.error}"
        typer.echo(line)


@app.command()
def stats(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Print aggregate contract figures."""
    config = _load(config_path)

    from insurance_engine.storage.db import Database
    from insurance_engine.storage.repository import SqlContractStore

    figures = SqlContractStore(Database(config.data.database_url)).stats()
    for name, value in figures.items():
        typer.echo(f"{name:<16} {value}")


if __name__ == "__main__":
    app()
