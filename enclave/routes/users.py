# enclave/routes/users.py
import logging
import math
from datetime import timedelta

from flask import Blueprint, g, jsonify, request
from sqlalchemy import func, or_

from enclave.auth import require_admin, require_self_or_admin
from enclave.db import EventType, Role, TerminalSession, User, UserSession, session_scope, utcnow
from enclave.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from enclave.extensions import services
from enclave.middleware import log_event
from enclave.schemas import CreateUserRequest, UpdateUserRequest, UserListQuery, parse

logger = logging.getLogger("enclave.auth")

users_bp = Blueprint("users", __name__)


def _active_counts(session, user_id):
    auth = (
        session.query(func.count(UserSession.id))
        .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True))
        .scalar()
    )
    terminals = (
        session.query(func.count(TerminalSession.id))
        .filter(TerminalSession.user_id == user_id, TerminalSession.is_active.is_(True))
        .scalar()
    )
    return {"sessions": auth or 0, "terminalSessions": terminals or 0}


@users_bp.route("", methods=["GET"])
@require_admin
def list_users():
    q = parse(UserListQuery, request.args.to_dict())
    with session_scope(services().session_factory) as session:
        query = session.query(User)
        if q.search:
            like = "%%%s%%" % q.search.lower()
            query = query.filter(or_(func.lower(User.username).like(like), func.lower(User.email).like(like)))
        if q.role:
            query = query.filter(User.role == q.role.value)
        if q.is_active is not None:
            query = query.filter(User.is_active.is_(q.is_active))
        total = query.count()
        users = []
        for user in query.order_by(User.created_at.desc()).offset(q.offset).limit(q.limit).all():
            out = user.to_dict()
            out["counts"] = _active_counts(session, user.id)
            users.append(out)
    return jsonify({
        "success": True,
        "data": {
            "users": users,
            "pagination": {
                "total": total,
                "limit": q.limit,
                "offset": q.offset,
                "pages": int(math.ceil(total / float(q.limit))),
            },
        },
    }), 200


@users_bp.route("/stats", methods=["GET"])
@require_admin
def user_stats():
    now = utcnow()
    with session_scope(services().session_factory) as session:
        total = session.query(func.count(User.id)).scalar() or 0
        active = session.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0
        by_role = dict(session.query(User.role, func.count(User.id)).group_by(User.role).all())
        recent_logins = (
            session.query(func.count(User.id))
            .filter(User.last_login >= now - timedelta(hours=24))
            .scalar() or 0
        )
        active_sessions = (
            session.query(func.count(UserSession.id))
            .filter(UserSession.is_active.is_(True), UserSession.expires_at >= now)
            .scalar() or 0
        )
    return jsonify({
        "success": True,
        "data": {
            "totalUsers": total,
            "activeUsers": active,
            "inactiveUsers": total - active,
            "usersByRole": by_role,
            "recentLogins": recent_logins,
            "activeSessions": active_sessions,
        },
    }), 200


@users_bp.route("", methods=["POST"])
@require_admin
def create_user():
    data = parse(CreateUserRequest, request.get_json(silent=True))
    auth = services().auth
    with session_scope(services().session_factory) as session:
        clash = (
            session.query(User)
            .filter(or_(User.username == data.username, User.email == data.email))
            .first()
        )
        if clash is not None:
            field = "Username" if clash.username == data.username else "Email"
            raise ConflictError("%s already exists" % field)
        user = User(
            username=data.username,
            email=data.email,
            password_hash=auth.hash_password(data.password),
            role=data.role.value,
            is_active=data.is_active,
        )
        session.add(user)
        session.flush()
        out = user.to_dict()
    log_event(EventType.LOGIN, out["id"], "User created by administrator",
              {"role": out["role"], "adminId": g.current_user["id"]})
    logger.info("User %s created by %s", out["username"], g.current_user["username"])
    return jsonify({"success": True, "message": "User created successfully", "data": {"user": out}}), 201


@users_bp.route("/<user_id>", methods=["GET"])
@require_self_or_admin
def get_user(user_id):
    now = utcnow()
    with session_scope(services().session_factory) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        out = user.to_dict()
        out["sessions"] = [
            s.to_dict() for s in session.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True),
                    UserSession.expires_at >= now)
            .order_by(UserSession.created_at.desc()).all()
        ]
        out["terminalSessions"] = [
            t.to_dict(include_history=False) for t in session.query(TerminalSession)
            .filter(TerminalSession.user_id == user_id, TerminalSession.is_active.is_(True))
            .order_by(TerminalSession.started_at.desc()).all()
        ]
    out["securityLogs"] = services().security_log.recent_for_user(user_id, limit=10)
    return jsonify({"success": True, "data": {"user": out}}), 200


@users_bp.route("/<user_id>", methods=["PUT"])
@require_self_or_admin
def update_user(user_id):
    data = parse(UpdateUserRequest, request.get_json(silent=True))
    caller = g.current_user
    is_admin = caller["role"] == Role.ADMIN.value
    if not is_admin and (data.role is not None or data.is_active is not None):
        raise AuthorizationError("Only administrators can change role or active status")
    if data.is_active is False and user_id == caller["id"]:
        raise ValidationError("Cannot deactivate your own account")

    with session_scope(services().session_factory) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if data.username or data.email:
            conditions = []
            if data.username:
                conditions.append(User.username == data.username)
            if data.email:
                conditions.append(User.email == data.email)
            clash = session.query(User).filter(User.id != user_id, or_(*conditions)).first()
            if clash is not None:
                field = "Username" if clash.username == data.username else "Email"
                raise ConflictError("%s already exists" % field)
        if data.username:
            user.username = data.username
        if data.email:
            user.email = data.email
        if data.role is not None:
            user.role = data.role.value
        if data.is_active is True:
            user.is_active = True

    if data.is_active is False:
        services().auth.deactivate_user(user_id)
    out = services().auth.get_user(user_id)
    logger.info("User profile updated: %s by %s", out["username"], caller["username"])
    return jsonify({"success": True, "message": "User updated successfully", "data": {"user": out}}), 200


@users_bp.route("/<user_id>", methods=["DELETE"])
@require_admin
def deactivate_user(user_id):
    if user_id == g.current_user["id"]:
        raise ValidationError("Cannot deactivate your own account")
    counts = services().auth.deactivate_user(user_id)
    log_event(EventType.LOGOUT, user_id, "User deactivated by administrator",
              dict(counts, adminId=g.current_user["id"]))
    return jsonify({"success": True, "message": "User deactivated successfully", "data": counts}), 200


@users_bp.route("/<user_id>/reactivate", methods=["POST"])
@require_admin
def reactivate_user(user_id):
    with session_scope(services().session_factory) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.is_active = True
        out = user.to_dict()
    log_event(EventType.LOGIN, user_id, "User reactivated by administrator",
              {"adminId": g.current_user["id"]})
    return jsonify({"success": True, "message": "User reactivated successfully", "data": {"user": out}}), 200


@users_bp.route("/<user_id>/sessions", methods=["GET"])
@require_self_or_admin
def list_user_sessions(user_id):
    with session_scope(services().session_factory) as session:
        rows = (
            session.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True),
                    UserSession.expires_at >= utcnow())
            .order_by(UserSession.created_at.desc())
            .all()
        )
        sessions = [r.to_dict() for r in rows]
    current = g.current_user.get("sessionId")
    for s in sessions:
        s["current"] = s["id"] == current
    return jsonify({"success": True, "data": {"sessions": sessions, "count": len(sessions)}}), 200


@users_bp.route("/<user_id>/sessions/<session_id>", methods=["DELETE"])
@require_self_or_admin
def terminate_user_session(user_id, session_id):
    services().auth.terminate_session(session_id, user_id=user_id)
    log_event(EventType.LOGOUT, user_id, "Session terminated", {"sessionId": session_id})
    return jsonify({"success": True, "message": "Session terminated successfully"}), 200


@users_bp.route("/<user_id>/sessions", methods=["DELETE"])
@require_self_or_admin
def terminate_all_user_sessions(user_id):
    count = services().auth.terminate_all_sessions(user_id)
    log_event(EventType.LOGOUT, user_id, "All sessions terminated", {"terminatedSessions": count})
    return jsonify({
        "success": True,
        "message": "All sessions terminated successfully",
        "data": {"terminatedSessions": count},
    }), 200
