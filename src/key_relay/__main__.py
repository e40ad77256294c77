"""Serve the relay with uvicorn: ``python -m key_relay``."""

from __future__ import annotations

import uvicorn

from key_relay.config.settings import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "key_relay.api.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
