"""Shared building blocks for platform modules."""
