"""
Seed script to populate default permissions and roles.

Run this script after database initialization to create:
- Default permissions, including the admin permission for the API
- A small role hierarchy (viewer -> editor -> admin)
- Initial role-permission assignments
- Optionally, the admin role for one user id given on the command line

Usage:
    python -m scripts.seed_permissions [admin_user_id]
"""
import asyncio
import sys

from rbac_engine.bootstrap import build_engine
from rbac_engine.core import config
from rbac_engine.core.database.engine import init_db
from rbac_engine.features.permissions.refs import ByName
from rbac_engine.features.permissions.schemas import Principal
from rbac_engine.utils import get_logger


log = get_logger(__name__)


DEFAULT_PERMISSIONS = [
    # Content permissions
    ("view posts", "posts", "View posts"),
    ("create posts", "posts", "Create new posts"),
    ("edit posts", "posts", "Edit existing posts"),
    ("publish posts", "posts", "Publish posts"),
    ("delete posts", "posts", "Delete posts"),

    # User management permissions
    ("view users", "users", "View user information"),
    ("edit users", "users", "Update user information"),

    # Administration
    ("view audit", "audit", "View the audit trail"),
    (config.ADMIN_PERMISSION, "admin", "Manage permissions, roles and assignments"),
]


# Parents come before their children
DEFAULT_ROLES = {
    "viewer": {
        "description": "Read-only access",
        "parent": None,
        "permissions": ["view posts", "view users"],
    },
    "editor": {
        "description": "Writes content; inherits viewer",
        "parent": "viewer",
        "permissions": ["create posts", "edit posts", "publish posts"],
    },
    "admin": {
        "description": "Administrator; inherits editor",
        "parent": "editor",
        "permissions": ["delete posts", "edit users", "view audit", config.ADMIN_PERMISSION],
    },
}


async def seed_permissions(engine) -> None:
    """Create default permissions, skipping those that already exist."""
    log.info("Creating default permissions...")
    for name, group, description in DEFAULT_PERMISSIONS:
        permission = await engine.service.find_or_create_permission(
            name, group=group, description=description, actor="seed"
        )
        log.debug(f"Permission '{name}' has id {permission.id}")
    log.info(f"Ensured {len(DEFAULT_PERMISSIONS)} permissions")


async def seed_roles(engine) -> None:
    """Create default roles, link the hierarchy and sync role permissions."""
    log.info("Creating default roles...")
    for role_name, role_config in DEFAULT_ROLES.items():
        await engine.service.find_or_create_role(role_name, description=role_config["description"], actor="seed")
        if role_config["parent"]:
            await engine.service.set_parent(ByName(role_name), ByName(role_config["parent"]), actor="seed")
        await engine.service.sync_role_permissions(ByName(role_name), role_config["permissions"], actor="seed")
        log.info(f"Role '{role_name}' has {len(role_config['permissions'])} direct permissions")
    log.info("Default roles created successfully")


async def main(admin_user_id=None):
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    engine = build_engine()
    try:
        await seed_permissions(engine)
        await seed_roles(engine)
        if admin_user_id:
            principal = Principal(principal_type="user", principal_id=admin_user_id)
            await engine.service.assign_role(principal, "admin", actor="seed")
            log.info(f"Assigned role 'admin' to user {admin_user_id}")

        log.info("Permission seeding completed successfully!")
        log.info("Default roles created:")
        for role_name, role_config in DEFAULT_ROLES.items():
            log.info(f"  - {role_name}: {role_config['description']}")
    finally:
        await engine.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
