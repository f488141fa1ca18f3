"""Shared building blocks for platform services."""
