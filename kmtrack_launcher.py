#!/usr/bin/env python3
"""Start the kmtrack server.

Prepares the data directory, logs a short readiness report and hands
over to uvicorn.  Installed as the ``kmtrack-server`` console script;
``python3 kmtrack_launcher.py`` works from a checkout too.
"""

import logging
import os
import signal
import time
from pathlib import Path

# Taken before uvicorn and the app are imported
BOOT_START = time.monotonic()

logger = logging.getLogger("kmtrack.launcher")


def setup_logging(level: str = "info"):
    """Root logging format shared with the server."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_preflight(config) -> list[tuple[str, bool]]:
    """Log anything that looks wrong before serving; nothing here is fatal."""
    checks = []

    for section in ["server", "database", "maps", "api"]:
        checks.append(("config." + section, hasattr(config, section)))

    db_dir = Path(config.database.db_path).parent
    checks.append((f"dir:{db_dir}", db_dir.exists() and os.access(db_dir, os.W_OK)))

    # Not a failure: no key means estimated distances
    if not config.has_maps_key:
        logger.warning("No Google Maps API key configured, distances will be estimated")

    passed = sum(1 for _, ok in checks if ok)
    logger.info("Pre-flight: %d/%d checks passed", passed, len(checks))
    for name, ok in checks:
        if not ok:
            logger.warning("Pre-flight check failed: %s", name)
    return checks


def ensure_data_dirs(config):
    """The SQLite file's parent directory has to exist before connect()."""
    Path(config.database.db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info("Database directory ready: %s", Path(config.database.db_path).parent)


def install_signal_handlers():
    """Turn SIGTERM and SIGINT into SystemExit so lifespan shutdown runs."""
    def handle_signal(signum, frame):
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, initiating graceful shutdown", sig_name)
        # uvicorn turns this into lifespan shutdown; cleanup lives there
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    logger.info("Signal handlers installed (SIGTERM, SIGINT)")


def main():
    """Console script entry point."""
    from core.config import get_config

    config = get_config()
    setup_logging(config.server.log_level)
    logger.info("=" * 60)
    logger.info("kmtrack launcher starting")
    logger.info("=" * 60)

    ensure_data_dirs(config)
    run_preflight(config)
    install_signal_handlers()

    import uvicorn
    logger.info("Boot prep took %.2fs, starting uvicorn on %s:%d",
                time.monotonic() - BOOT_START, config.server.host, config.server.port)
    uvicorn.run(
        "interfaces.dashboard.server:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
        access_log=False,
    )


if __name__ == "__main__":
    main()
