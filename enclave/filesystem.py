# enclave/filesystem.py
"""
Virtual filesystem: directory/file rows with per-node role visibility.

A node is visible to a requester when its access level is PUBLIC, equals the
requester's role, or the requester is ADMIN. Missing and hidden nodes are
reported with the same error so existence never leaks.
"""

import logging
from typing import Any, Dict, List, Optional

from enclave.db import AccessLevel, FilesystemNode, NodeType, Role, session_scope
from enclave.errors import AlreadyExists, NotFoundError, NotFoundOrDenied, ValidationError

logger = logging.getLogger("enclave.filesystem")

ROOT = "/"


def normalize_path(path: Optional[str]) -> str:
    """Canonical absolute form: leading slash, no trailing slash, '.' and '..' folded."""
    parts: List[str] = []
    for segment in (path or "").replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def resolve_path(current: str, target: str) -> str:
    """Resolve ``target`` against the working directory ``current``."""
    if target.startswith("/"):
        return normalize_path(target)
    base = normalize_path(current)
    return normalize_path(base.rstrip("/") + "/" + target)


def parent_path(path: str) -> str:
    path = normalize_path(path)
    if path == ROOT:
        return ROOT
    return path.rsplit("/", 1)[0] or ROOT


def is_visible(access_level: str, role: str) -> bool:
    return (
        access_level == AccessLevel.PUBLIC.value
        or access_level == role
        or role == Role.ADMIN.value
    )


def _sort_key(node: FilesystemNode):
    return (0 if node.is_directory else 1, node.name)


class FilesystemStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ---------- reads ----------

    def _active_node(self, session, path: str) -> Optional[FilesystemNode]:
        return (
            session.query(FilesystemNode)
            .filter(FilesystemNode.path == path, FilesystemNode.is_active.is_(True))
            .first()
        )

    def find_node(self, path: str, role: str, node_type: Optional[NodeType] = None) -> Optional[Dict[str, Any]]:
        """The visible active node at ``path`` (optionally of one type), else None."""
        path = normalize_path(path)
        with session_scope(self.session_factory) as session:
            node = self._active_node(session, path)
            if node is None and path == ROOT and node_type in (None, NodeType.DIRECTORY):
                # an empty store still has an implicit root
                return {"path": ROOT, "name": "root", "type": NodeType.DIRECTORY.value,
                        "accessLevel": AccessLevel.PUBLIC.value}
            if node is None or not is_visible(node.access_level, role):
                return None
            if node_type is not None and node.node_type != node_type.value:
                return None
            return node.to_dict()

    def is_directory(self, path: str, role: str) -> bool:
        return self.find_node(path, role, NodeType.DIRECTORY) is not None

    def list_children(self, path: str, role: str) -> List[Dict[str, Any]]:
        """Visible active children of the directory at ``path``, directories first then by name."""
        path = normalize_path(path)
        with session_scope(self.session_factory) as session:
            parent = self._active_node(session, path)
            if parent is None and path != ROOT:
                raise NotFoundOrDenied("Directory not found or access denied")
            if parent is not None and (not parent.is_directory or not is_visible(parent.access_level, role)):
                raise NotFoundOrDenied("Directory not found or access denied")

            q = session.query(FilesystemNode).filter(FilesystemNode.is_active.is_(True))
            if parent is None:
                q = q.filter(FilesystemNode.parent_id.is_(None), FilesystemNode.path != ROOT)
            else:
                q = q.filter(FilesystemNode.parent_id == parent.id)
            children = [n for n in q.all() if is_visible(n.access_level, role)]
            children.sort(key=_sort_key)
            return [n.to_dict(include_content=False) for n in children]

    def read_file(self, path: str, role: str) -> Dict[str, Any]:
        node = self.find_node(path, role, NodeType.FILE)
        if node is None:
            raise NotFoundOrDenied()
        return node

    def get_by_id(self, node_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            node = session.get(FilesystemNode, node_id)
            if node is None or not node.is_active:
                raise NotFoundError("File or directory not found")
            return node.to_dict()

    # ---------- administrative writes ----------

    def create(self, path: str, node_type: NodeType = NodeType.FILE, content: Optional[str] = None,
               access_level: AccessLevel = AccessLevel.PUBLIC) -> Dict[str, Any]:
        path = normalize_path(path)
        name = path.rsplit("/", 1)[-1] if path != ROOT else "root"
        with session_scope(self.session_factory) as session:
            parent_id = None
            if path != ROOT:
                parent = self._active_node(session, parent_path(path))
                if parent is None and parent_path(path) != ROOT:
                    raise NotFoundError("Parent directory not found: %s" % parent_path(path))
                if parent is not None and not parent.is_directory:
                    raise ValidationError("Parent is not a directory: %s" % parent_path(path))
                parent_id = parent.id if parent is not None else None

            existing = session.query(FilesystemNode).filter(FilesystemNode.path == path).first()
            if existing is not None and existing.is_active:
                raise AlreadyExists()
            if existing is None:
                existing = FilesystemNode(path=path)
                session.add(existing)
            # a soft-deleted row keeps its path; reuse it
            existing.name = name
            existing.node_type = node_type.value
            existing.content = (content or "") if node_type == NodeType.FILE else None
            existing.parent_id = parent_id
            existing.access_level = access_level.value
            existing.is_active = True
            session.flush()
            out = existing.to_dict()
        logger.info("%s created: %s", node_type.value, path)
        return out

    def update(self, node_id: str, name: Optional[str] = None, content: Optional[str] = None,
               access_level: Optional[AccessLevel] = None) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            node = session.get(FilesystemNode, node_id)
            if node is None or not node.is_active:
                raise NotFoundError("File or directory not found")
            if name is not None and name != node.name:
                if "/" in name or name in (".", ".."):
                    raise ValidationError("Invalid name: %s" % name)
                if node.path == ROOT:
                    raise ValidationError("The root directory cannot be renamed")
                old_path = node.path
                new_path = normalize_path(parent_path(old_path).rstrip("/") + "/" + name)
                clash = session.query(FilesystemNode).filter(FilesystemNode.path == new_path).first()
                if clash is not None:
                    if clash.is_active:
                        raise AlreadyExists()
                    self._purge(session, clash)
                for child in self._descendants(session, old_path, active_only=False):
                    child.path = new_path + child.path[len(old_path):]
                node.name = name
                node.path = new_path
            if content is not None and not node.is_directory:
                node.content = content
            if access_level is not None:
                node.access_level = access_level.value
            session.flush()
            out = node.to_dict()
        logger.info("Filesystem node updated: %s", out["path"])
        return out

    def delete(self, node_id: str) -> Dict[str, Any]:
        """Soft delete; a directory takes all of its descendants with it."""
        with session_scope(self.session_factory) as session:
            node = session.get(FilesystemNode, node_id)
            if node is None or not node.is_active:
                raise NotFoundError("File or directory not found")
            if node.path == ROOT:
                raise ValidationError("The root directory cannot be deleted")
            node.is_active = False
            removed = 1
            for child in self._descendants(session, node.path):
                child.is_active = False
                removed += 1
            path = node.path
        logger.info("Filesystem node deleted: %s (%d nodes)", path, removed)
        return {"path": path, "deleted": removed}

    def _purge(self, session, node: FilesystemNode) -> None:
        """Hard-delete a soft-deleted subtree so its paths can be taken over."""
        stale = [node] + self._descendants(session, node.path, active_only=False)
        if any(row.is_active for row in stale):
            raise AlreadyExists()
        # children before parents
        for row in sorted(stale, key=lambda n: len(n.path), reverse=True):
            session.delete(row)
            session.flush()
        logger.info("Purged %d deleted nodes under %s", len(stale), node.path)

    @staticmethod
    def _descendants(session, path: str, active_only: bool = True) -> List[FilesystemNode]:
        prefix = path.rstrip("/") + "/"
        q = session.query(FilesystemNode).filter(FilesystemNode.path.startswith(prefix, autoescape=True))
        if active_only:
            q = q.filter(FilesystemNode.is_active.is_(True))
        return q.all()
