# enclave/seed.py
"""Demo users and filesystem. Run with ``python -m enclave.seed``."""

import logging

from enclave.db import (
    AccessLevel, EventType, FilesystemNode, NodeType, Role, SecurityLog, User,
    get_database_url, init_db, isoformat, session_scope, utcnow,
)
from enclave.utils.security import hash_password

logger = logging.getLogger("enclave.db")

DEFAULT_USERS = [
    ("admin", "admin@phoenix-industries.com", "admin123", Role.ADMIN),
    ("military", "military@phoenix-industries.com", "military123", Role.MILITARY),
    ("researcher", "researcher@phoenix-industries.com", "researcher123", Role.RESEARCHER),
    ("hybrid", "hybrid@phoenix-industries.com", "hybrid123", Role.MILITARYRESEARCHER),
]

README = """Welcome to Phoenix Industries Terminal System

Access Levels:
- military: Military personnel access
- researcher: Research personnel access
- hybrid: Combined military and research access
- admin: System administrator

Use the appropriate access code to enter your terminal."""

DEPLOYMENT_ORDERS = """CLASSIFIED: Military Deployment Orders

Status: All units on standby
Location: Phoenix Base
Next briefing: TBD"""

RESEARCH_NOTES = """# Research Notes

## Current Projects
1. Project Phoenix - Main system development
2. Security Protocol Analysis
3. Terminal Interface Optimization

## Recent Findings
- System performance improved by 47%
- Security protocols holding strong
- User feedback positive"""


def _system_status() -> str:
    stamp = isoformat(utcnow())
    return "[%s] System initialized\n[%s] All systems operational\n[%s] Security protocols enabled" % (
        stamp, stamp, stamp)


# (path, type, access level, content); parents must come before children
def default_tree():
    return [
        ("/", NodeType.DIRECTORY, AccessLevel.PUBLIC, None),
        ("/system", NodeType.DIRECTORY, AccessLevel.ADMIN, None),
        ("/military", NodeType.DIRECTORY, AccessLevel.MILITARY, None),
        ("/research", NodeType.DIRECTORY, AccessLevel.RESEARCHER, None),
        ("/community", NodeType.DIRECTORY, AccessLevel.PUBLIC, None),
        ("/readme.txt", NodeType.FILE, AccessLevel.PUBLIC, README),
        ("/system/system_status.log", NodeType.FILE, AccessLevel.ADMIN, _system_status()),
        ("/military/deployment_orders.txt", NodeType.FILE, AccessLevel.MILITARY, DEPLOYMENT_ORDERS),
        ("/research/research_notes.md", NodeType.FILE, AccessLevel.RESEARCHER, RESEARCH_NOTES),
        ("/community/profiles", NodeType.DIRECTORY, AccessLevel.PUBLIC, None),
        ("/community/leaders", NodeType.DIRECTORY, AccessLevel.PUBLIC, None),
        ("/drones", NodeType.DIRECTORY, AccessLevel.MILITARY, None),
    ]


def seed(session_factory, bcrypt_rounds: int = 12) -> bool:
    """Populate an empty database. Returns False (and does nothing) if users already exist."""
    with session_scope(session_factory) as session:
        if session.query(User).first() is not None:
            logger.info("Database already seeded; skipping")
            return False

        users = {}
        for username, email, password, role in DEFAULT_USERS:
            user = User(username=username, email=email, role=role.value, is_active=True,
                        password_hash=hash_password(password, rounds=bcrypt_rounds))
            session.add(user)
            users[username] = user
            logger.info("Created user: %s (%s)", username, role.value)
        session.flush()

        ids = {}
        for path, node_type, access, content in default_tree():
            parent = None if path == "/" else ids[path.rsplit("/", 1)[0] or "/"]
            node = FilesystemNode(
                name="root" if path == "/" else path.rsplit("/", 1)[-1],
                path=path,
                node_type=node_type.value,
                content=content,
                parent_id=parent,
                access_level=access.value,
                is_active=True,
            )
            session.add(node)
            session.flush()
            ids[path] = node.id

        session.add(SecurityLog(user_id=users["admin"].id, event_type=EventType.LOGIN.value,
                                description="System initialization - Admin user created",
                                ip_address="127.0.0.1", user_agent="Database Seeder",
                                meta={"action": "system_init"}))
        session.add(SecurityLog(user_id=None, event_type=EventType.LOGIN.value,
                                description="System initialized - Ready for operations",
                                ip_address="127.0.0.1", user_agent="Database Seeder",
                                meta={"action": "system_ready"}))

    logger.info("Database seeding completed")
    return True


if __name__ == "__main__":
    import os
    logging.basicConfig(level=logging.INFO)
    factory = init_db(get_database_url())
    if seed(factory, bcrypt_rounds=int(os.environ.get("BCRYPT_ROUNDS", 12))):
        for username, _, password, role in DEFAULT_USERS:
            print("  - Username: %s, Password: %s, Access: %s" % (username, password, role.value))
