from __future__ import annotations

import structlog
from alembic import command
from alembic.config import Config

logger = structlog.get_logger(__name__)


def run_upgrade_head(config_path: str = "alembic.ini") -> None:
    command.upgrade(Config(config_path), "head")
    logger.info("db.migrated", revision="head")


if __name__ == "__main__":
    run_upgrade_head()
