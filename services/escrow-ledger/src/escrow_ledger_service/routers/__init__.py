"""API routers."""

from escrow_ledger_service.routers import admin, health, internal, payments, tasks, wallet

__all__ = ["admin", "health", "internal", "payments", "tasks", "wallet"]
