"""
main.py: Server launcher and entry point.

Run this file to start the arbitrator and its operator API:

    python main.py

Settings come from ARBITRATOR_* environment variables (see
arbitrator/utils/config.py). This file does NOT contain application logic.
See app.py for the FastAPI application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app
"""

from __future__ import annotations

import uvicorn

from arbitrator.utils.config import get_settings


def main() -> None:
    """Start the arbitrator and serve the operator API."""
    settings = get_settings()
    print("=" * 60)
    print(f"  {settings.app_name} {settings.app_version}")
    print("=" * 60)
    print(f"  API      : http://{settings.api_host}:{settings.api_port}")
    print(f"  Snapshot : http://{settings.api_host}:{settings.api_port}/snapshot")
    print(f"  Policy   : {settings.allocation_policy}")
    print(f"  Resync   : {settings.resync_period_seconds}s")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    uvicorn.run(
        "app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
