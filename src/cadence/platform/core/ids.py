"""Prefixed identifiers for billing records."""

from uuid import uuid4


def generate_id(prefix: str) -> str:
    """Return ``{prefix}_{32 hex chars}``, e.g. ``sub_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


__all__ = ["generate_id"]
