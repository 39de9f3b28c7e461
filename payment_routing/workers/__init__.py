"""Background workers for async processing."""
from .outbox_publisher import build_publisher, start_outbox_publisher

__all__ = ["build_publisher", "start_outbox_publisher"]
