"""Process-wide logging setup."""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Attach a stdout handler once; later calls only adjust the level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("app").setLevel(level.upper())
