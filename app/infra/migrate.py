from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from loguru import logger

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def run_upgrade_head(revision: str = "head") -> None:
    config = Config(str(ALEMBIC_INI))
    logger.bind(event="migrate").info("upgrading schema to {}", revision)
    command.upgrade(config, revision)


if __name__ == "__main__":
    run_upgrade_head()
