"""CLI for Operata Wallet - run the webhook service and manage wallets."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="operata",
    help="Operate a custodial blockchain wallet from a Notion workspace.",
    no_args_is_help=True,
)
console = Console()

_base_path: Path | None = None


def _version_callback(value: bool):
    if value:
        from operata_wallet import __version__
        console.print(f"operata-wallet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    directory: Path = typer.Option(
        None,
        "--dir",
        "-d",
        help="Directory containing the .operata data folder (default: current directory)",
        envvar="OPERATA_HOME",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Operate a custodial blockchain wallet from a Notion workspace."""
    global _base_path
    _base_path = directory
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


async def _load():
    from operata_wallet.core.context import AppContext

    try:
        return await AppContext.load(_base_path)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# init / serve
# ------------------------------------------------------------------


@app.command()
def init(
    chain: str = typer.Option("sepolia", "--chain", "-c", help="Default chain for new wallets"),
    port: int = typer.Option(8080, "--port", "-p", help="Webhook server port"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config"),
):
    """Create .operata/config.yaml and the ledger database."""
    from operata_wallet.chain.chains import list_chain_names
    from operata_wallet.config import AppConfig, get_data_dir
    from operata_wallet.core.context import CONFIG_FILENAME, AppContext

    if chain not in list_chain_names():
        console.print(f"[red]Unknown chain '{chain}'.[/red] Available: {', '.join(list_chain_names())}")
        raise typer.Exit(1)

    config_path = get_data_dir(_base_path, create=False) / CONFIG_FILENAME
    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists at {config_path}.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)

    config = AppConfig()
    config.chain.default_chain = chain
    config.server.port = port
    config.server.webhook_secret = "${NOTION_WEBHOOK_SECRET}"

    async def _init():
        ctx = await AppContext.init(_base_path, config)
        data_dir = ctx.data_dir
        await ctx.shutdown()
        return data_dir

    data_dir = _run(_init())
    console.print(Panel(
        f"[bold green]Initialized Operata Wallet[/bold green]\n\n"
        f"Config: [cyan]{data_dir / CONFIG_FILENAME}[/cyan]\n"
        f"Default chain: [cyan]{chain}[/cyan]\n\n"
        f"[dim]Export OPERATA_ENCRYPTION_KEY before creating wallets or serving.\n"
        f"Then: operata workspace add <notion-workspace-id>[/dim]",
        title="Operata Wallet",
    ))


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Host to bind to (default: from config)"),
    port: int = typer.Option(None, "--port", "-p", help="Port to serve on (default: from config)"),
):
    """Run the webhook server, job workers and wallet monitors."""
    from operata_wallet.config import get_data_dir, load_config
    from operata_wallet.core.context import CONFIG_FILENAME
    from operata_wallet.server.app import run_server

    config_path = get_data_dir(_base_path, create=False) / CONFIG_FILENAME
    if not config_path.exists():
        console.print("[red]No config found.[/red] Run 'operata init' first.")
        raise typer.Exit(1)
    config = load_config(config_path)
    host = host or config.server.host
    port = port or config.server.port

    console.print(f"[bold green]Listening for Notion webhooks at http://{host}:{port}/webhooks/notion[/bold green]")
    run_server(host=host, port=port, base_path=_base_path)


# ------------------------------------------------------------------
# workspace sub-commands
# ------------------------------------------------------------------

workspace_app = typer.Typer(
    name="workspace",
    help="Register the Notion workspaces the service acts for.",
    no_args_is_help=True,
)
app.add_typer(workspace_app, name="workspace")


@workspace_app.command("add")
def workspace_add(
    notion_workspace_id: str = typer.Argument(help="Notion workspace id (as sent in webhooks)"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    token: str = typer.Option(
        ..., "--token", "-t", help="Notion integration token",
        envvar="NOTION_TOKEN", prompt=True, hide_input=True,
    ),
):
    """Register a Notion workspace and its integration token."""
    from operata_wallet.storage.models import WorkspaceRecord

    async def _add():
        ctx = await _load()
        try:
            if await ctx.ledger.get_workspace_by_notion_id(notion_workspace_id):
                return None
            return await ctx.ledger.add_workspace(
                WorkspaceRecord(
                    notion_workspace_id=notion_workspace_id,
                    notion_token=token,
                    name=name,
                )
            )
        finally:
            await ctx.shutdown()

    workspace = _run(_add())
    if workspace is None:
        console.print(f"[yellow]Workspace {notion_workspace_id} is already registered.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Workspace registered:[/green] {workspace.id} ({notion_workspace_id})")


@workspace_app.command("list")
def workspace_list():
    """List registered workspaces."""

    async def _list():
        ctx = await _load()
        try:
            return await ctx.ledger.list_workspaces()
        finally:
            await ctx.shutdown()

    workspaces = _run(_list())
    if not workspaces:
        console.print("[dim]No workspaces registered. Use 'operata workspace add'.[/dim]")
        return

    table = Table(title="Workspaces")
    table.add_column("ID", style="dim")
    table.add_column("Notion workspace", style="cyan")
    table.add_column("Name")
    table.add_column("Created", style="dim")
    for ws in workspaces:
        table.add_row(ws.id, ws.notion_workspace_id, ws.name, ws.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


# ------------------------------------------------------------------
# wallet sub-commands
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Create and inspect custodial wallets.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create(
    workspace_id: str = typer.Argument(help="Workspace id (from 'operata workspace list')"),
    chain: str = typer.Option(None, "--chain", "-c", help="Chain name (default: from config)"),
):
    """Generate a wallet with a sealed signing key."""
    from operata_wallet.errors import OperataError

    async def _create():
        ctx = await _load()
        try:
            return await ctx.wallets.create_wallet(workspace_id, chain)
        finally:
            await ctx.shutdown()

    try:
        wallet = _run(_create())
    except (OperataError, KeyError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"ID: [cyan]{wallet.id}[/cyan]\n"
        f"Address: [cyan]{wallet.address}[/cyan]\n"
        f"Chain: {wallet.chain}\n\n"
        f"[dim]Link its Notion databases with 'operata wallet link {wallet.id} ...'\n"
        f"and fund the address to cover transfers and gas.[/dim]",
        title="Custodial Wallet",
    ))


@wallet_app.command("link")
def wallet_link(
    wallet_id: str = typer.Argument(help="Wallet id"),
    page: str = typer.Option(None, "--page", help="Wallet dashboard page id"),
    scheduled_db: str = typer.Option(None, "--scheduled-db", help="Scheduled Transactions database id"),
    transactions_db: str = typer.Option(None, "--transactions-db", help="Transactions database id"),
    nft_db: str = typer.Option(None, "--nft-db", help="NFT database id"),
    received_db: str = typer.Option(None, "--received-db", help="Received Transactions database id"),
):
    """Attach Notion databases to a wallet."""
    from operata_wallet.errors import NotFoundError

    async def _link():
        ctx = await _load()
        try:
            return await ctx.wallets.link_databases(
                wallet_id,
                notion_page_id=page,
                scheduled_transactions_db_id=scheduled_db,
                transactions_db_id=transactions_db,
                nft_db_id=nft_db,
                received_transactions_db_id=received_db,
            )
        finally:
            await ctx.shutdown()

    try:
        wallet = _run(_link())
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Wallet {wallet.id}", show_header=False)
    table.add_column("Container", style="cyan")
    table.add_column("Notion id")
    table.add_row("Page", wallet.notion_page_id or "-")
    table.add_row("Scheduled Transactions", wallet.scheduled_transactions_db_id or "-")
    table.add_row("Transactions", wallet.transactions_db_id or "-")
    table.add_row("NFTs", wallet.nft_db_id or "-")
    table.add_row("Received Transactions", wallet.received_transactions_db_id or "-")
    console.print(table)


@wallet_app.command("list")
def wallet_list(
    workspace_id: str = typer.Option(None, "--workspace", "-w", help="Only wallets of this workspace"),
):
    """List wallets with their cached balances."""

    async def _list():
        ctx = await _load()
        try:
            return await ctx.ledger.list_wallets(workspace_id)
        finally:
            await ctx.shutdown()

    wallets = _run(_list())
    if not wallets:
        console.print("[dim]No wallets yet.[/dim]")
        return

    table = Table(title="Wallets")
    table.add_column("ID", style="dim")
    table.add_column("Address", style="cyan")
    table.add_column("Chain")
    table.add_column("Balance", justify="right")
    table.add_column("Last sync", style="dim")
    for w in wallets:
        table.add_row(
            w.id,
            w.address,
            w.chain,
            w.balance,
            w.last_sync_at.strftime("%Y-%m-%d %H:%M") if w.last_sync_at else "-",
        )
    console.print(table)


@wallet_app.command("balance")
def wallet_balance(
    wallet_id: str = typer.Argument(help="Wallet id"),
):
    """Query the chain for a wallet's native balance."""
    from operata_wallet.chain.chains import get_chain
    from operata_wallet.errors import NotFoundError

    async def _balance():
        ctx = await _load()
        try:
            wallet = await ctx.wallets.require_wallet(wallet_id)
            return wallet, await ctx.wallets.get_balance(wallet_id)
        finally:
            await ctx.shutdown()

    try:
        wallet, balance = _run(_balance())
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    except Exception as exc:
        console.print(f"[red]Balance query failed:[/red] {exc}")
        raise typer.Exit(1)

    symbol = get_chain(wallet.chain).native_symbol
    console.print(f"[bold]{wallet.address}[/bold] on {wallet.chain}: {balance} {symbol}")


# ------------------------------------------------------------------
# scheduled / queue
# ------------------------------------------------------------------

scheduled_app = typer.Typer(
    name="scheduled",
    help="Inspect scheduled transactions.",
    no_args_is_help=True,
)
app.add_typer(scheduled_app, name="scheduled")


_STATUS_STYLE = {
    "Pending": "yellow",
    "Processing": "cyan",
    "Completed": "green",
    "Failed": "red",
}


@scheduled_app.command("list")
def scheduled_list(
    status: str = typer.Option(None, "--status", "-s", help="Filter: Pending, Processing, Completed, Failed"),
):
    """List scheduled transactions known to the ledger."""
    from operata_wallet.storage.models import OperataStatus

    try:
        status_filter = OperataStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Unknown status '{status}'.[/red]")
        raise typer.Exit(1)

    async def _list():
        ctx = await _load()
        try:
            return await ctx.ledger.list_scheduled(status_filter)
        finally:
            await ctx.shutdown()

    records = _run(_list())
    if not records:
        console.print("[dim]No scheduled transactions.[/dim]")
        return

    table = Table(title="Scheduled Transactions")
    table.add_column("Name")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Scheduled", style="dim")
    table.add_column("Admin")
    table.add_column("Status")
    for r in records:
        style = _STATUS_STYLE.get(r.operata_status.value, "white")
        table.add_row(
            r.transaction_name,
            r.to_address,
            r.amount,
            r.schedule_date.strftime("%Y-%m-%d %H:%M"),
            r.admin_status.value,
            f"[{style}]{r.operata_status.value}[/{style}]",
        )
    console.print(table)


queue_app = typer.Typer(
    name="queue",
    help="Inspect the job queue.",
    no_args_is_help=True,
)
app.add_typer(queue_app, name="queue")


@queue_app.command("status")
def queue_status():
    """Show job counts per state."""

    async def _status():
        ctx = await _load()
        try:
            return ctx.config.queue.name, await ctx.queue.status()
        finally:
            await ctx.shutdown()

    name, counts = _run(_status())
    table = Table(title=f"Queue '{name}'")
    table.add_column("State", style="cyan")
    table.add_column("Jobs", justify="right")
    for state, count in counts.items():
        table.add_row(state, str(count))
    console.print(table)
