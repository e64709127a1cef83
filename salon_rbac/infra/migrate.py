from __future__ import annotations

import logging

from alembic import command
from alembic.config import Config

from salon_rbac.infra.log_config import configure_logging

logger = logging.getLogger(__name__)


def run_upgrade_head(config_path: str = "alembic.ini") -> None:
    logger.info("applying migrations from %s", config_path)
    command.upgrade(Config(config_path), "head")


if __name__ == "__main__":
    configure_logging()
    run_upgrade_head()
