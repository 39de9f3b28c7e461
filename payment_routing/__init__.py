"""Payment provider routing, webhook relay and wallet ledger service."""

__version__ = "1.0.0"
