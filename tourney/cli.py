"""CLI entry point for the tournament ledger.

Commands:
  tourney init-db                      — Create or upgrade the database
  tourney tournament create|status|list — Manage tournaments
  tourney participant register|disqualify|withdraw
  tourney ingest FILE                  — Apply JSON-lines trade/snapshot events
  tourney leaderboard TOURNAMENT       — Show the ranked leaderboard
  tourney rank PARTICIPANT             — Show one participant's rank
  tourney stats                        — Trading statistics
  tourney history PARTICIPANT          — Performance snapshot history
  tourney audit                        — Query the audit trail
  tourney cleanup                      — Retention purge
  tourney backup                       — Back up the database
  tourney metrics                      — Dump in-process metrics
"""

from __future__ import annotations

import json
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from tourney.config import EngineConfig, load_config
from tourney.engine.app import TournamentEngine
from tourney.engine.ledger import TradeFilter
from tourney.errors import EngineError
from tourney.storage.audit import AuditFilter
from tourney.storage.backup import backup_from_config
from tourney.storage.models import Division, TournamentStatus
from tourney.observability.logger import configure_from_config, get_logger
from tourney.observability.metrics import metrics

load_dotenv()

console = Console()
log = get_logger(__name__)


def _engine(ctx: click.Context) -> TournamentEngine:
    return TournamentEngine(ctx.obj["config"])


def _fail(e: EngineError) -> None:
    console.print(f"[red]{e.code}[/red] {e.message}")
    sys.exit(1)


def _money(v: float | None) -> str:
    return "—" if v is None else f"${v:,.2f}"


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--db", "db_path", default=None, help="Override storage.sqlite_path")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, db_path: str | None) -> None:
    """Tournament trading ledger and leaderboard."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    if db_path:
        cfg.storage.sqlite_path = db_path
    ctx.obj["config"] = cfg
    configure_from_config(cfg.observability, fmt="console")


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or upgrade the database schema."""
    with _engine(ctx) as eng:
        row = eng.db.query_one("SELECT MAX(version) AS v FROM schema_version")
        console.print(f"[green]Database ready[/green] at {eng.config.storage.sqlite_path} (schema v{row['v'] if row else 0})")


# ─── TOURNAMENTS ─────────────────────────────────────────────────────

@cli.group()
def tournament() -> None:
    """Tournament lifecycle commands."""


@tournament.command("create")
@click.option("--name", required=True)
@click.option("--division", type=click.Choice([d.value for d in Division]), default=Division.MID_RISK.value)
@click.option("--balance", "starting_balance", default=100_000.0, help="Starting balance per participant")
@click.option("--symbol", "symbols", multiple=True, help="Allowed symbol (repeatable; none = any)")
@click.option("--id", "tournament_id", default=None)
@click.pass_context
def tournament_create(
    ctx: click.Context,
    name: str,
    division: str,
    starting_balance: float,
    symbols: tuple[str, ...],
    tournament_id: str | None,
) -> None:
    """Create a tournament in draft status."""
    with _engine(ctx) as eng:
        try:
            t = eng.tournaments.create_tournament(
                name=name,
                division=division,
                starting_balance=starting_balance,
                symbols=list(symbols),
                tournament_id=tournament_id,
            )
        except EngineError as e:
            _fail(e)
            return
    console.print(f"[green]Created[/green] {t.id} ({t.division.value}, {_money(t.starting_balance)})")


@tournament.command("status")
@click.argument("tournament_id")
@click.argument("new_status", type=click.Choice([s.value for s in TournamentStatus]))
@click.option("--actor", default="admin")
@click.pass_context
def tournament_status(ctx: click.Context, tournament_id: str, new_status: str, actor: str) -> None:
    """Move a tournament to NEW_STATUS."""
    with _engine(ctx) as eng:
        try:
            t = eng.tournaments.transition(tournament_id, new_status, actor=actor)
        except EngineError as e:
            _fail(e)
            return
    console.print(f"{t.id} is now [bold]{t.status.value}[/bold]")


@tournament.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in TournamentStatus]))
@click.pass_context
def tournament_list(ctx: click.Context, status: str | None) -> None:
    """List tournaments."""
    with _engine(ctx) as eng:
        rows = eng.tournaments.list_tournaments(status)

    table = Table(title="Tournaments")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Division")
    table.add_column("Status")
    table.add_column("Balance", justify="right")
    table.add_column("Symbols")
    for t in rows:
        table.add_row(
            t.id, t.name, t.division.value, t.status.value,
            _money(t.starting_balance), ", ".join(t.symbols) or "any",
        )
    console.print(table)


# ─── PARTICIPANTS ────────────────────────────────────────────────────

@cli.group()
def participant() -> None:
    """Participant registry commands."""


@participant.command("register")
@click.argument("tournament_id")
@click.argument("user_id")
@click.option("--balance", "starting_balance", default=None, type=float)
@click.pass_context
def participant_register(
    ctx: click.Context, tournament_id: str, user_id: str, starting_balance: float | None
) -> None:
    """Register USER_ID in a tournament."""
    with _engine(ctx) as eng:
        try:
            p = eng.tournaments.register_participant(
                tournament_id, user_id, starting_balance=starting_balance
            )
        except EngineError as e:
            _fail(e)
            return
    console.print(f"[green]Registered[/green] {user_id} as {p.id}")


@participant.command("disqualify")
@click.argument("participant_id")
@click.option("--reason", required=True)
@click.pass_context
def participant_disqualify(ctx: click.Context, participant_id: str, reason: str) -> None:
    """Disqualify a participant and drop them from the ranking."""
    with _engine(ctx) as eng:
        try:
            eng.tournaments.disqualify_participant(participant_id, reason)
        except EngineError as e:
            _fail(e)
            return
    console.print(f"[yellow]Disqualified[/yellow] {participant_id}: {reason}")


@participant.command("withdraw")
@click.argument("participant_id")
@click.pass_context
def participant_withdraw(ctx: click.Context, participant_id: str) -> None:
    """Withdraw a participant from their tournament."""
    with _engine(ctx) as eng:
        try:
            eng.tournaments.withdraw_participant(participant_id)
        except EngineError as e:
            _fail(e)
            return
    console.print(f"Withdrew {participant_id}")


# ─── INGEST ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def ingest(ctx: click.Context, path: str) -> None:
    """Apply events from a JSON-lines file.

    Each line is an event object with a "type" of "trade" or "snapshot".
    """
    counts = {"applied": 0, "duplicate": 0, "rejected": 0}
    with _engine(ctx) as eng, open(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw: dict[str, Any] = json.loads(line)
            except json.JSONDecodeError as e:
                console.print(f"[red]line {lineno}[/red]: not JSON ({e.msg})")
                counts["rejected"] += 1
                continue
            kind = raw.pop("type", "trade")
            apply = eng.ingestion.apply_snapshot_event if kind == "snapshot" else eng.ingestion.apply_trade_event
            try:
                result = apply(raw)
            except EngineError as e:
                console.print(f"[red]line {lineno}[/red]: {e.code} {e.message}")
                counts["rejected"] += 1
                if e.retryable:
                    log.warning("cli.ingest_retryable", line=lineno, code=e.code)
                continue
            counts[result.outcome] += 1

    console.print(
        f"applied={counts['applied']} duplicate={counts['duplicate']} rejected={counts['rejected']}"
    )
    if counts["rejected"]:
        sys.exit(2)


# ─── READS ───────────────────────────────────────────────────────────

@cli.command()
@click.argument("tournament_id")
@click.option("--limit", default=None, type=int)
@click.option("--offset", default=0)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def leaderboard(ctx: click.Context, tournament_id: str, limit: int | None, offset: int, as_json: bool) -> None:
    """Show the ranked leaderboard of a tournament."""
    with _engine(ctx) as eng:
        board = eng.ranking.get_leaderboard(tournament_id, limit=limit, offset=offset)
    if board is None:
        console.print(f"[red]Unknown tournament[/red] {tournament_id}")
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(board.to_dict(), indent=2))
        return

    table = Table(title=f"🏆 {board.tournament_name or board.tournament_id} (v{board.ranking_version})")
    table.add_column("Rank", justify="right", style="bold")
    table.add_column("User")
    table.add_column("Total P&L", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Win Rate", justify="right")
    table.add_column("Best", justify="right")
    for e in board.entries:
        color = "green" if e.total_pnl >= 0 else "red"
        table.add_row(
            str(e.rank), e.user_id, f"[{color}]{_money(e.total_pnl)}[/{color}]",
            _money(e.realized_pnl), _money(e.unrealized_pnl), _money(e.current_balance),
            str(e.total_trades), f"{e.win_rate:.1%}", str(e.best_rank or "—"),
        )
    console.print(table)
    console.print(f"{board.total_participants} active participants, updated {board.last_updated or 'never'}")


@cli.command()
@click.argument("participant_id")
@click.pass_context
def rank(ctx: click.Context, participant_id: str) -> None:
    """Show one participant's current and best rank."""
    with _engine(ctx) as eng:
        r = eng.ranking.get_participant_rank(participant_id)
    if r is None:
        console.print(f"[red]Unknown participant[/red] {participant_id}")
        sys.exit(1)
    click.echo(json.dumps(r.to_dict(), indent=2))


@cli.command()
@click.option("--tournament", "tournament_id", default=None)
@click.option("--participant", "participant_id", default=None)
@click.option("--symbol", default=None)
@click.pass_context
def stats(ctx: click.Context, tournament_id: str | None, participant_id: str | None, symbol: str | None) -> None:
    """Trading statistics over executed trades."""
    f = TradeFilter(tournament_id=tournament_id, participant_id=participant_id, symbol=symbol)
    with _engine(ctx) as eng:
        s = eng.ledger.get_trading_statistics(f)
        top = eng.ledger.get_top_symbols(f, limit=5)

    table = Table(title="📊 Trading Statistics")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Trades", str(s.total_trades))
    table.add_row("Executed", str(s.executed_trades))
    table.add_row("Volume", _money(s.total_volume))
    table.add_row("Realized P&L", _money(s.total_pnl))
    table.add_row("Wins / Losses", f"{s.winning_trades} / {s.losing_trades}")
    table.add_row("Win Rate", f"{s.win_rate:.1%}")
    table.add_row("Avg Trade Size", _money(s.average_trade_size))
    for t in top:
        table.add_row(f"  {t['symbol']}", f"{t['trade_count']} trades, {_money(t['total_volume'])}")
    console.print(table)


@cli.command()
@click.argument("participant_id")
@click.option("--limit", default=20)
@click.pass_context
def history(ctx: click.Context, participant_id: str, limit: int) -> None:
    """Performance snapshot history, newest first."""
    with _engine(ctx) as eng:
        snaps = eng.performance.get_performance_history(participant_id, limit=limit)

    table = Table(title=f"Performance — {participant_id}")
    table.add_column("Recorded", style="cyan")
    table.add_column("Total P&L", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Trades", justify="right")
    table.add_column("Max DD", justify="right")
    table.add_column("Sharpe", justify="right")
    for s in snaps:
        table.add_row(
            s.recorded_at, _money(s.total_pnl), _money(s.balance), str(s.number_of_trades),
            f"{s.max_drawdown:.2%}" if s.max_drawdown is not None else "—",
            f"{s.sharpe_ratio:.2f}" if s.sharpe_ratio is not None else "—",
        )
    console.print(table)


@cli.command()
@click.option("--action", default=None)
@click.option("--actor", default=None)
@click.option("--entity-id", default=None)
@click.option("--limit", default=50)
@click.option("--verify", is_flag=True, help="Verify entry checksums")
@click.pass_context
def audit(
    ctx: click.Context,
    action: str | None,
    actor: str | None,
    entity_id: str | None,
    limit: int,
    verify: bool,
) -> None:
    """Query the audit trail, newest first."""
    with _engine(ctx) as eng:
        if verify:
            valid, invalid = eng.audit.verify_integrity()
            color = "green" if invalid == 0 else "red"
            console.print(f"[{color}]{valid} valid, {invalid} invalid[/{color}]")
            if invalid:
                sys.exit(1)
            return
        entries = eng.audit.get_audit_logs(
            AuditFilter(action=action, actor=actor, entity_id=entity_id, limit=limit)
        )

    table = Table(title="🔍 Audit Trail")
    table.add_column("Time", style="cyan")
    table.add_column("Actor")
    table.add_column("Action", style="bold")
    table.add_column("Entity")
    table.add_column("Metadata")
    for e in entries:
        table.add_row(
            e.timestamp, e.actor, e.action, f"{e.entity_type}:{e.entity_id}",
            json.dumps(e.metadata, default=str)[:80],
        )
    console.print(table)


# ─── MAINTENANCE ─────────────────────────────────────────────────────

@cli.command()
@click.option("--performance-days", default=None, type=int)
@click.option("--audit-days", default=None, type=int)
@click.pass_context
def cleanup(ctx: click.Context, performance_days: int | None, audit_days: int | None) -> None:
    """Purge snapshots and audit entries past their retention."""
    with _engine(ctx) as eng:
        snaps = eng.performance.cleanup_old_performance_data(performance_days)
        entries = eng.audit.cleanup_old_logs(audit_days)
    console.print(f"Purged {snaps} snapshots, {entries} audit entries")


@cli.command()
@click.pass_context
def backup(ctx: click.Context) -> None:
    """Back up the database with SQLite's online backup API."""
    cfg: EngineConfig = ctx.obj["config"]
    try:
        path = backup_from_config(cfg.storage)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except EngineError as e:
        _fail(e)
        return
    console.print(f"[green]Backup written[/green] {path}")


@cli.command("metrics")
def show_metrics() -> None:
    """Dump in-process metrics as JSON."""
    click.echo(json.dumps(metrics.snapshot(), indent=2, default=str))


if __name__ == "__main__":
    cli()
