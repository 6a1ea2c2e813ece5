from typing import Iterable

from rich.console import Console
from rich.table import Table

from storage_gateway.models import NodeStatus, StorageNode

_STATUS_STYLE = {
    NodeStatus.ACTIVE: "green",
    NodeStatus.FULL: "yellow",
    NodeStatus.MAINTENANCE: "cyan",
    NodeStatus.OFFLINE: "red",
}


def get_rich_console() -> Console: return Console(stderr=True)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def nodes_table(nodes: Iterable[StorageNode]) -> Table:
    """Таблица нод без учётных данных."""
    table = Table(title="Storage nodes")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Endpoint")
    table.add_column("Bucket")
    table.add_column("Used", justify="right")
    table.add_column("Files", justify="right")
    table.add_column("Status")
    for node in nodes:
        style = _STATUS_STYLE.get(node.status, "white")
        table.add_row(
            node.node_id,
            node.backend_type.value,
            node.endpoint_url,
            node.bucket or "-",
            f"{format_bytes(node.used_capacity_bytes)} / {format_bytes(node.total_capacity_bytes)} "
            f"({node.used_capacity_percent:.1f}%)",
            str(node.file_count),
            f"[{style}]{node.status.value}[/{style}]",
        )
    return table
