"""Serve the ledger with uvicorn using the ``server`` section of the config file."""

from __future__ import annotations

import uvicorn

from escrow_ledger_service.config import get_settings


def build_server_config() -> uvicorn.Config:
    settings = get_settings()
    return uvicorn.Config(
        "escrow_ledger_service.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


def main() -> None:
    uvicorn.Server(build_server_config()).run()


if __name__ == "__main__":
    main()
