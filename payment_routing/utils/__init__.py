"""Shared helpers."""
from .money import from_minor, minor_unit_exponent, to_minor

__all__ = ["from_minor", "minor_unit_exponent", "to_minor"]
