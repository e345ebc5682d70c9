"""Logging configuration for codewright."""

import logging
import sys
from pathlib import Path


def setup_logging(log_file: str = "log/codewright.log", level: int = logging.DEBUG) -> None:
    """Setup logging to file and stderr."""

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
    ]

    # The `run` command prints agent steps on stdout; keep stderr quiet there
    if "run" not in sys.argv[1:2]:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("codewright").setLevel(level)

    logging.info("=" * 60)
    logging.info(f"codewright logging started. Writing to {log_path.absolute()}")
    logging.info("=" * 60)
