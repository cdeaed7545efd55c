import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def generate_id() -> str:
    """Generate a unique ID for jobs"""
    return str(uuid.uuid4())


def get_utc_now() -> datetime:
    """Get current UTC timestamp"""
    return datetime.now(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display"""
    if dt is None:
        return "N/A"
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def configure_logging(verbose: bool = False) -> None:
    """Route queuectl log records to stderr through rich."""
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger("queuectl")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False
