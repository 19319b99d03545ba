"""
One-shot role seeder for compose deployments.

Expects env:
- PGHOST, PGPORT, PGDATABASE, PGUSER, PG_PASSWORD
- LMS_ROLES_PATH (optional): path to auth_roles.yaml inside the container

Actions:
1) Ensure the RBAC tables exist (RBACStore applies DDL best-effort).
2) Upsert every catalog role: create missing roles, refresh display data
   and permissions of existing ones, re-activate disabled ones.
Roles that exist in the database but not in the catalog are left untouched.
Exits 0 on success, non-zero on failure.
"""

import os
import sys
from typing import Dict, List

from src.utils.config_service import load_app_config
from src.utils.logging import get_logger
from src.utils.postgres_service_factory import PostgresServiceFactory
from src.utils.rbac.registry import RBACRegistry, load_registry
from src.utils.rbac.store import RBACStore

logger = get_logger(__name__)


def seed(registry: RBACRegistry, store: RBACStore) -> Dict[str, List[str]]:
    """
    Upsert the registry's roles into the store. Safe to run repeatedly.

    Returns:
        {'created': [...names], 'updated': [...names]}
    """
    summary: Dict[str, List[str]] = {'created': [], 'updated': []}
    for definition in registry.roles:
        role, created = store.upsert_role(
            definition.name,
            definition.display_name,
            definition.description,
            definition.permissions,
        )
        summary['created' if created else 'updated'].append(role.name)
        logger.info(
            f"[role-seed] {'created' if created else 'updated'} role '{role.name}' "
            f"({len(role.permissions)} permissions)"
        )
    return summary


def seed_entry(roles_path: str = None) -> Dict[str, List[str]]:
    registry = load_registry(roles_path)
    config = load_app_config(require_secret=False)
    factory = PostgresServiceFactory.from_app_config(config)
    try:
        return seed(registry, factory.rbac_store)
    finally:
        factory.close()


def main():
    summary = seed_entry(os.environ.get("LMS_ROLES_PATH"))
    print(f"Role seeding completed: {len(summary['created'])} created, {len(summary['updated'])} updated")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Role seeding failed: {exc}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)
