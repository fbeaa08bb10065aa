from __future__ import annotations

import logging
import os

import uvicorn

from slotguard.context import AppContext


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("SLOTGUARD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    _configure_logging()
    host = os.getenv("SLOTGUARD_HOST", "0.0.0.0")
    port = int(os.getenv("SLOTGUARD_PORT", "8080"))
    uvicorn.run("slotguard.web_admin:create_app", factory=True, host=host, port=port, reload=False)


def cleanup_locks() -> int:
    _configure_logging()
    context = AppContext(
        config_path=os.getenv("SLOTGUARD_CONFIG_PATH", "config.yaml"),
        state_path=os.getenv("SLOTGUARD_STATE_PATH") or None,
    )
    print("Cleaning up stale availability locks...")
    cleared = context.orchestrator.sweep_stale()
    if cleared > 0:
        print(f"Cleared {cleared} stale lock(s).")
    else:
        print("No stale locks found.")
    deleted = context.orchestrator.sweep_old()
    if deleted > 0:
        print(f"Deleted {deleted} old lock record(s).")
    return 0


if __name__ == "__main__":
    main()
