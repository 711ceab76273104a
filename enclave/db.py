# enclave/db.py

import os
import json
import enum
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Index, create_engine
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("enclave.db")

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (what every DateTime column stores)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


class Role(str, enum.Enum):
    MILITARY = "MILITARY"
    RESEARCHER = "RESEARCHER"
    MILITARYRESEARCHER = "MILITARYRESEARCHER"
    ADMIN = "ADMIN"


class AccessLevel(str, enum.Enum):
    PUBLIC = "PUBLIC"
    MILITARY = "MILITARY"
    RESEARCHER = "RESEARCHER"
    ADMIN = "ADMIN"


class TerminalType(str, enum.Enum):
    MILITARY = "MILITARY"
    RESEARCHER = "RESEARCHER"
    FILESYSTEM = "FILESYSTEM"
    EMERGENCY = "EMERGENCY"


class NodeType(str, enum.Enum):
    FILE = "FILE"
    DIRECTORY = "DIRECTORY"


class EventType(str, enum.Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    COMMAND = "COMMAND"
    ACCESS_DENIED = "ACCESS_DENIED"
    SUSPICIOUS = "SUSPICIOUS"


class JSONText(TypeDecorator):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return value


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(30), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column("access_level", String(32), nullable=False, default=Role.RESEARCHER.value)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "isActive": bool(self.is_active),
            "lastLogin": isoformat(self.last_login),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class UserSession(Base):
    __tablename__ = "user_sessions"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, index=True)
    refresh_token_hash = Column(String(64), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "expiresAt": isoformat(self.expires_at),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "isActive": bool(self.is_active),
            "createdAt": isoformat(self.created_at),
        }


class TerminalSession(Base):
    __tablename__ = "terminal_sessions"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    terminal_type = Column(String(32), nullable=False)
    session_data = Column(JSONText, nullable=False, default=dict)
    command_history = Column(JSONText, nullable=False, default=list)
    current_directory = Column(String(1024), nullable=False, default="/")
    is_active = Column(Boolean, nullable=False, default=True)
    started_at = Column(DateTime, default=utcnow)
    last_activity = Column(DateTime, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "userId": self.user_id,
            "terminalType": self.terminal_type,
            "sessionData": self.session_data or {},
            "currentDirectory": self.current_directory,
            "isActive": bool(self.is_active),
            "startedAt": isoformat(self.started_at),
            "lastActivity": isoformat(self.last_activity),
        }
        if include_history:
            out["commandHistory"] = list(self.command_history or [])
        return out


class FilesystemNode(Base):
    __tablename__ = "filesystem"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    path = Column(String(1024), unique=True, nullable=False)
    node_type = Column("type", String(16), nullable=False, default=NodeType.FILE.value)
    content = Column(Text, nullable=True)
    parent_id = Column(String(36), ForeignKey("filesystem.id"), nullable=True, index=True)
    access_level = Column(String(32), nullable=False, default=AccessLevel.PUBLIC.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_directory(self) -> bool:
        return self.node_type == NodeType.DIRECTORY.value

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.node_type,
            "parentId": self.parent_id,
            "accessLevel": self.access_level,
            "isActive": bool(self.is_active),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if include_content and not self.is_directory:
            out["content"] = self.content
        return out


class SecurityLog(Base):
    __tablename__ = "security_logs"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    description = Column(Text, nullable=False)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(Text, nullable=True)
    meta = Column("metadata", JSONText, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self, username: Optional[str] = None) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "userId": self.user_id,
            "eventType": self.event_type,
            "description": self.description,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "metadata": self.meta,
            "createdAt": isoformat(self.created_at),
        }
        if username is not None:
            out["username"] = username
        return out


Index("ix_security_logs_type_created", SecurityLog.event_type, SecurityLog.created_at)


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL", None)
    if url:
        return url

    # individual DB env vars (MySQL)
    db_user = os.environ.get("DATABASE_USER") or os.environ.get("MYSQL_USER")
    db_pass = os.environ.get("DATABASE_PASSWORD") or os.environ.get("MYSQL_PASSWORD")
    db_host = os.environ.get("DATABASE_HOST") or os.environ.get("MYSQL_HOST")
    db_port = os.environ.get("DATABASE_PORT") or os.environ.get("MYSQL_PORT") or "3306"
    db_name = os.environ.get("DATABASE_NAME") or os.environ.get("MYSQL_DATABASE")

    if db_user and db_pass and db_host and db_name:
        return f"mysql+pymysql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}?charset=utf8mb4"

    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    data_dir = os.path.join(root, "data")
    os.makedirs(data_dir, exist_ok=True)
    return f"sqlite:///{os.path.join(data_dir, 'enclave.db')}"


def _mask_url(database_url: str) -> str:
    if "@" not in database_url or "://" not in database_url:
        return database_url
    proto, rest = database_url.split("://", 1)
    creds, hostpart = rest.split("@", 1)
    if ":" in creds:
        user = creds.split(":", 1)[0]
        return f"{proto}://{user}:***@{hostpart}"
    return database_url


def init_db(database_url: Optional[str] = None, echo: bool = False) -> sessionmaker:
    """Create the engine, ensure tables and return a session factory."""
    database_url = database_url or get_database_url()
    logger.info("Using database URL: %s", _mask_url(database_url))

    kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # request handlers and socket handlers share the engine across threads
        kwargs["connect_args"] = {"check_same_thread": False}
    try:
        engine = create_engine(database_url, **kwargs)
    except Exception as e:
        logger.exception("Failed to create engine: %s", e)
        raise

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker):
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
