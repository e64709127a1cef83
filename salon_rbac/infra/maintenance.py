from __future__ import annotations

import argparse
import logging

from salon_rbac.infra.log_config import configure_logging
from salon_rbac.infra.tenant import request_context
from salon_rbac.services.role_admin_service import RoleAdminService

logger = logging.getLogger(__name__)


def purge_expired_grants() -> dict[str, int]:
    """Delete expired role assignments and direct grants.

    Hygiene only: expired rows are already ignored at read time.
    """
    with request_context("system", "maintenance"):
        return RoleAdminService().purge_expired_grants()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="salon-rbac maintenance jobs")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    counts = purge_expired_grants()
    logger.info("maintenance finished %s", counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
