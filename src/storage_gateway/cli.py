import asyncio
import typer
import logging
import sys
from typing import Optional
if sys.platform == "win32":
    # asyncpg не работает с ProactorEventLoop по умолчанию в Windows.
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
from storage_gateway import create_gateway_client
from storage_gateway import logging as gateway_logging
from storage_gateway.config import get_settings
from storage_gateway.exceptions import StorageGatewayError
from storage_gateway.models import BackendType, NodeStatus, StorageNode
from storage_gateway.security import generate_master_key as _generate_master_key
from storage_gateway.utils.cli_utils import get_rich_console, nodes_table


app = typer.Typer(help="CLI for storage-gateway management.")
nodes_app = typer.Typer(help="Storage node registry.")
app.add_typer(nodes_app, name="nodes")
logger = logging.getLogger(__name__)
console = get_rich_console()


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL.")):
    gateway_logging.configure(log_level or get_settings().log_level)


def _run(coro_factory):
    """Запускает корутину с клиентом и гарантированно закрывает пул соединений."""
    async def _wrapper():
        client = create_gateway_client()
        try:
            return await coro_factory(client)
        finally:
            await client.aclose()
    return asyncio.run(_wrapper())


@app.command()
def init():
    """
    Creates database tables and registers the storage nodes from configuration.
    """
    console.rule("[bold cyan]Service Initialization[/bold cyan]")

    with console.status("Creating PostgreSQL tables...", spinner="dots"):
        async def _create_tables(client):
            await client.create_tables()
        try:
            _run(_create_tables)
            console.log("[bold green]✔[/bold green] Database tables created successfully.")
        except Exception as e:
            console.log(f"[bold red]✖[/bold red] Database initialization FAILED: {e}")
            raise typer.Exit(code=1)

    with console.status("Registering storage nodes...", spinner="dots"):
        async def _seed(client):
            return await client.seed_nodes()
        try:
            registered = _run(_seed)
        except StorageGatewayError as e:
            console.log(f"[bold red]✖[/bold red] Node registration FAILED: {e}")
            raise typer.Exit(code=1)
        for node in registered:
            console.log(f"[bold green]✔[/bold green] Registered node '{node.node_id}' ({node.backend_type.value}).")
        if not registered:
            console.log("No new storage nodes to register.")

    console.print("\n[bold green]✅ All services initialized successfully![/bold green]")


@app.command()
def check(
    record: bool = typer.Option(False, "--record", help="Store health results; unreachable nodes become OFFLINE."),
):
    """Checks connectivity to PostgreSQL and every registered storage node."""
    console.rule("[bold cyan]Connection Check[/bold cyan]")

    async def _check(client):
        return await client.check_connections(record_health=record)

    statuses = _run(_check)
    failed = False
    for name, status in statuses.items():
        label = "PostgreSQL" if name == "postgres" else f"Node '{name}'"
        if status == "ok" or status.startswith("disabled"):
            console.print(f"[bold green]✔[/bold green] {label} connection: {status.upper() if status == 'ok' else status}")
        else:
            failed = True
            console.print(f"[bold red]✖[/bold red] {label} connection: FAILED ({status})")
    if failed:
        raise typer.Exit(code=1)


@nodes_app.command("list")
def list_nodes():
    """Lists registered storage nodes with capacity and status."""
    async def _list(client):
        return await client.list_nodes()
    console.print(nodes_table(_run(_list)))


@nodes_app.command("register")
def register_node(
    node_id: str = typer.Argument(..., help="Unique node id."),
    backend_type: BackendType = typer.Option(..., "--type", case_sensitive=False),
    endpoint: str = typer.Option(..., "--endpoint"),
    capacity: int = typer.Option(..., "--capacity", help="Total capacity in bytes."),
    bucket: Optional[str] = typer.Option(None, "--bucket", help="Bucket, or root directory for SFTP."),
    public_endpoint: Optional[str] = typer.Option(None, "--public-endpoint"),
    region: Optional[str] = typer.Option(None, "--region"),
    access_key: Optional[str] = typer.Option(None, "--access-key", envvar="NODE_ACCESS_KEY"),
    secret_key: Optional[str] = typer.Option(None, "--secret-key", envvar="NODE_SECRET_KEY", hide_input=True),
):
    """Registers a storage node; credentials are encrypted before they are stored."""
    async def _register(client):
        node = StorageNode(
            node_id=node_id,
            backend_type=backend_type,
            endpoint_url=endpoint,
            public_url=public_endpoint,
            access_key=access_key,
            secret_key=secret_key,
            bucket=bucket,
            region=region,
            total_capacity_bytes=capacity,
        )
        return await client.register_node(node)
    try:
        node = _run(_register)
    except StorageGatewayError as e:
        console.print(f"[bold red]✖[/bold red] Registration FAILED: {e}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]✔[/bold green] Registered node '{node.node_id}' ({node.backend_type.value}).")


@nodes_app.command("set-status")
def set_node_status(
    node_id: str = typer.Argument(...),
    status: NodeStatus = typer.Argument(..., case_sensitive=False),
):
    """Moves a node to ACTIVE, FULL, MAINTENANCE or OFFLINE."""
    async def _set(client):
        return await client.set_node_status(node_id, status)
    try:
        node = _run(_set)
    except StorageGatewayError as e:
        console.print(f"[bold red]✖[/bold red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]✔[/bold green] Node '{node.node_id}' is now {node.status.value}.")


@app.command("sweep-sessions")
def sweep_sessions():
    """Marks overdue chunked-upload sessions EXPIRED and purges their chunks."""
    async def _sweep(client):
        return await client.expire_sessions()
    count = _run(_sweep)
    console.print(f"[bold green]✔[/bold green] Expired {count} upload session(s).")


@app.command("generate-master-key")
def generate_master_key():
    """Prints a fresh base64 master key for ENCRYPTION__MASTER_KEY."""
    typer.echo(_generate_master_key())
