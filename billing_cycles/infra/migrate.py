from __future__ import annotations

import logging
import os
import sys

from alembic import command
from alembic.config import Config

from billing_cycles.infra.logging import setup_logging

logger = logging.getLogger(__name__)


def run_upgrade(revision: str = "head") -> None:
    config = Config(os.getenv("ALEMBIC_CONFIG", "alembic.ini"))
    logger.info("upgrading billing schema to %s", revision)
    command.upgrade(config, revision)


def main() -> None:
    setup_logging()
    run_upgrade(sys.argv[1] if len(sys.argv) > 1 else "head")


if __name__ == "__main__":
    main()
