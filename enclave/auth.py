# enclave/auth.py

import logging
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Optional

from flask import Blueprint, g, jsonify, request, current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from enclave.db import EventType, Role, TerminalSession, User, UserSession, session_scope, utcnow
from enclave.errors import (
    AccountDeactivated, AuthenticationError, AuthorizationError, ConflictError,
    CurrentPasswordIncorrect, EnclaveError, InvalidCredentials, InvalidRefreshToken,
    NotFoundError, TokenInvalid, ValidationError,
)
from enclave.extensions import auth_limit, limiter, services
from enclave.schemas import ChangePasswordRequest, LoginRequest, RefreshRequest, RegisterRequest, parse
from enclave.tokens import TokenService
from enclave.utils.security import check_password, client_ip, hash_password, hash_token, user_agent

logger = logging.getLogger("enclave.auth")

auth_bp = Blueprint("auth", __name__)

REFRESH_COOKIE = "refreshToken"


class AuthService:
    """Credential store and session registry."""

    def __init__(self, session_factory, tokens: TokenService, security_log, bcrypt_rounds: int = 12):
        self.session_factory = session_factory
        self.tokens = tokens
        self.security_log = security_log
        self.bcrypt_rounds = bcrypt_rounds
        # compared against when the username is unknown, so both paths cost one bcrypt check
        self._dummy_hash = hash_password("phoenix-dummy-password", rounds=bcrypt_rounds)

    def hash_password(self, password: str) -> str:
        return hash_password(password, rounds=self.bcrypt_rounds)

    def _open_session(self, session, user: User, ip: str, agent: Optional[str]) -> Dict[str, Any]:
        pair = self.tokens.issue_pair(user.id, user.username, user.role)
        session.add(UserSession(
            user_id=user.id,
            token_hash=hash_token(pair["accessToken"]),
            refresh_token_hash=hash_token(pair["refreshToken"]),
            expires_at=self.tokens.refresh_expiry(),
            ip_address=ip or "unknown",
            user_agent=agent,
            is_active=True,
        ))
        return pair

    @staticmethod
    def _deactivate_sessions(session, user_id: str) -> int:
        return (
            session.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .update({UserSession.is_active: False}, synchronize_session=False)
        )

    # ---------- registration ----------

    def register(self, data: RegisterRequest, ip: str, agent: Optional[str],
                 granted_by_admin: bool = False) -> Dict[str, Any]:
        if data.role == Role.ADMIN and not granted_by_admin:
            raise AuthorizationError("Only administrators can create administrator accounts")

        duplicate = None
        with session_scope(self.session_factory) as session:
            existing = (
                session.query(User)
                .filter(or_(User.username == data.username, User.email == data.email))
                .first()
            )
            if existing is not None:
                duplicate = "username" if existing.username == data.username else "email"

        if duplicate:
            self.security_log.record(
                EventType.SUSPICIOUS, None, "Registration attempt with existing %s" % duplicate,
                ip, agent, {duplicate: getattr(data, duplicate)},
            )
            raise ConflictError("%s already exists" % duplicate.capitalize())

        try:
            with session_scope(self.session_factory) as session:
                user = User(
                    username=data.username,
                    email=data.email,
                    password_hash=self.hash_password(data.password),
                    role=data.role.value,
                    is_active=True,
                )
                session.add(user)
                session.flush()
                pair = self._open_session(session, user, ip, agent)
                out = user.to_dict()
        except IntegrityError:
            # lost a race against a concurrent registration
            raise ConflictError("Username or email already exists")

        self.security_log.record(EventType.LOGIN, out["id"], "User registered successfully",
                                 ip, agent, {"role": out["role"]})
        logger.info("New user registered: %s (%s)", out["username"], out["id"])
        return {"user": out, "tokens": pair}

    # ---------- login / refresh / logout ----------

    def login(self, username: str, password: str, ip: str, agent: Optional[str]) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            user = session.query(User).filter(User.username == username).first()
            if user is None:
                check_password(password, self._dummy_hash)
                failure = ("Login attempt with non-existent username", None, InvalidCredentials())
            elif not check_password(password, user.password_hash):
                failure = ("Login attempt with invalid password", user.id, InvalidCredentials())
            elif not user.is_active:
                failure = ("Login attempt with deactivated account", user.id, AccountDeactivated())
            else:
                failure = None
                user.last_login = utcnow()
                pair = self._open_session(session, user, ip, agent)
                out = user.to_dict()

        if failure:
            description, user_id, error = failure
            self.security_log.record(EventType.ACCESS_DENIED, user_id, description, ip, agent,
                                     {"username": username})
            raise error

        self.security_log.record(EventType.LOGIN, out["id"], "User logged in successfully",
                                 ip, agent, {"role": out["role"]})
        logger.info("User authenticated: %s (%s) from %s", out["username"], out["id"], ip)
        return {"user": out, "tokens": pair}

    def refresh(self, refresh_token: str, ip: str, agent: Optional[str]) -> Dict[str, Any]:
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except AuthenticationError:
            self.security_log.record(EventType.ACCESS_DENIED, None,
                                     "Token refresh with invalid/expired token", ip, agent)
            raise InvalidRefreshToken()

        user_id = claims["userId"]
        old_hash = hash_token(refresh_token)
        failure = None
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None or not user.is_active:
                failure = (EventType.ACCESS_DENIED, "Token refresh for missing or inactive user")
            else:
                row = (
                    session.query(UserSession)
                    .filter(
                        UserSession.user_id == user_id,
                        UserSession.refresh_token_hash == old_hash,
                        UserSession.is_active.is_(True),
                        UserSession.expires_at > utcnow(),
                    )
                    .first()
                )
                if row is None:
                    failure = (EventType.SUSPICIOUS, "Token refresh with unknown session")
                else:
                    pair = self.tokens.issue_pair(user.id, user.username, user.role)
                    # rotate only if nobody else rotated this row first
                    updated = (
                        session.query(UserSession)
                        .filter(
                            UserSession.id == row.id,
                            UserSession.refresh_token_hash == old_hash,
                            UserSession.is_active.is_(True),
                        )
                        .update({
                            UserSession.token_hash: hash_token(pair["accessToken"]),
                            UserSession.refresh_token_hash: hash_token(pair["refreshToken"]),
                            UserSession.expires_at: self.tokens.refresh_expiry(),
                            UserSession.ip_address: ip or "unknown",
                            UserSession.user_agent: agent,
                        }, synchronize_session=False)
                    )
                    if updated != 1:
                        session.rollback()
                        failure = (EventType.SUSPICIOUS, "Refresh token rotated concurrently")
                    username = user.username

        if failure:
            event_type, description = failure
            logger.warning("%s: user=%s ip=%s", description, user_id, ip)
            self.security_log.record(event_type, user_id, description, ip, agent, {"userId": user_id})
            raise InvalidRefreshToken()

        logger.info("Tokens refreshed for user: %s (%s)", username, user_id)
        return pair

    def logout(self, user_id: str, ip: str, agent: Optional[str]) -> int:
        with session_scope(self.session_factory) as session:
            count = self._deactivate_sessions(session, user_id)
        self.security_log.record(EventType.LOGOUT, user_id, "User logged out", ip, agent,
                                 {"deactivatedSessions": count})
        logger.info("User logged out: %s - deactivated %d sessions", user_id, count)
        return count

    def change_password(self, user_id: str, current: str, new: str, ip: str, agent: Optional[str]) -> int:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None or not user.is_active:
                raise NotFoundError("User not found or inactive")
            username = user.username
            ok = check_password(current, user.password_hash)
            if ok:
                user.password_hash = self.hash_password(new)
                count = self._deactivate_sessions(session, user_id)

        if not ok:
            self.security_log.record(EventType.SUSPICIOUS, user_id,
                                     "Password change attempt with invalid current password",
                                     ip, agent, {"username": username})
            raise CurrentPasswordIncorrect()

        self.security_log.record(EventType.LOGIN, user_id, "Password changed successfully",
                                 ip, agent, {"username": username, "deactivatedSessions": count})
        logger.info("Password changed for user: %s (%s)", username, user_id)
        return count

    # ---------- bearer authentication ----------

    def authenticate(self, access_token: str) -> Dict[str, Any]:
        """Resolve a bearer token to its user; the issuing session must still be live."""
        claims = self.tokens.verify_access(access_token)
        with session_scope(self.session_factory) as session:
            row = (
                session.query(UserSession)
                .filter(
                    UserSession.token_hash == hash_token(access_token),
                    UserSession.is_active.is_(True),
                    UserSession.expires_at > utcnow(),
                )
                .first()
            )
            if row is None or row.user_id != claims["userId"]:
                raise TokenInvalid("Session is no longer active")
            user = session.get(User, claims["userId"])
            if user is None:
                raise AuthenticationError("User not found")
            if not user.is_active:
                raise AccountDeactivated()
            out = user.to_dict()
            out["sessionId"] = row.id
        return out

    def get_user(self, user_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            return user.to_dict()

    # ---------- administrative session control ----------

    def deactivate_user(self, user_id: str) -> Dict[str, int]:
        """Soft delete: the user and every auth and terminal session go inactive."""
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            user.is_active = False
            sessions = self._deactivate_sessions(session, user_id)
            terminals = (
                session.query(TerminalSession)
                .filter(TerminalSession.user_id == user_id, TerminalSession.is_active.is_(True))
                .all()
            )
            for t in terminals:
                t.is_active = False
        return {"authSessions": sessions, "terminalSessions": len(terminals)}

    def terminate_session(self, session_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            q = session.query(UserSession).filter(UserSession.id == session_id)
            if user_id is not None:
                q = q.filter(UserSession.user_id == user_id)
            row = q.first()
            if row is None:
                raise NotFoundError("Session not found")
            row.is_active = False
            return row.to_dict()

    def terminate_all_sessions(self, user_id: str) -> int:
        with session_scope(self.session_factory) as session:
            return self._deactivate_sessions(session, user_id)


# ---------- request guards ----------

def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header:
        return None
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        return None
    return parts[1].strip()


def require_token(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise AuthenticationError("Access token required")
        g.current_user = services().auth.authenticate(token)
        g.access_token = token
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    @require_token
    @wraps(f)
    def decorated(*args, **kwargs):
        if g.current_user["role"] != Role.ADMIN.value:
            logger.warning("Access denied for user %s: admin required, has %s",
                           g.current_user["username"], g.current_user["role"])
            raise AuthorizationError("Insufficient access level")
        return f(*args, **kwargs)
    return decorated


def require_self_or_admin(f):
    """Guard for ``/<user_id>/...`` routes: callers may only touch their own record."""
    @require_token
    @wraps(f)
    def decorated(*args, **kwargs):
        target = kwargs.get("user_id")
        user = g.current_user
        if user["role"] != Role.ADMIN.value and user["id"] != target:
            logger.warning("User %s tried to access resources of user %s", user["username"], target)
            raise AuthorizationError("Access denied - can only access your own resources")
        return f(*args, **kwargs)
    return decorated


def optional_user() -> Optional[Dict[str, Any]]:
    token = _bearer_token()
    if not token:
        return None
    try:
        return services().auth.authenticate(token)
    except EnclaveError:
        return None


# ---------- cookie helpers ----------

def _set_refresh_cookie(resp, refresh_token: str):
    cfg = current_app.config
    resp.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=int(timedelta(days=cfg["JWT_REFRESH_EXPIRES_DAYS"]).total_seconds()),
        httponly=True,
        secure=str(cfg.get("ENV", "")).lower() == "production",
        samesite="Strict",
    )
    return resp


def _clear_refresh_cookie(resp):
    resp.delete_cookie(REFRESH_COOKIE, httponly=True, samesite="Strict")
    return resp


# ---------- routes ----------

@auth_bp.route("/register", methods=["POST"])
@limiter.limit(auth_limit)
def route_register():
    data = parse(RegisterRequest, request.get_json(silent=True))
    caller = optional_user()
    granted = caller is not None and caller["role"] == Role.ADMIN.value
    result = services().auth.register(data, client_ip(), user_agent(), granted_by_admin=granted)
    tokens = result["tokens"]
    resp = jsonify({
        "success": True,
        "message": "User registered successfully",
        "data": {"user": result["user"], **tokens},
    })
    _set_refresh_cookie(resp, tokens["refreshToken"])
    return resp, 201


@auth_bp.route("/login", methods=["POST"])
@limiter.limit(auth_limit)
def route_login():
    data = parse(LoginRequest, request.get_json(silent=True))
    result = services().auth.login(data.username, data.password, client_ip(), user_agent())
    tokens = result["tokens"]
    resp = jsonify({
        "success": True,
        "message": "Login successful",
        "data": {"user": result["user"], **tokens},
    })
    _set_refresh_cookie(resp, tokens["refreshToken"])
    return resp, 200


@auth_bp.route("/refresh", methods=["POST"])
def route_refresh():
    data = parse(RefreshRequest, request.get_json(silent=True))
    refresh = data.refresh_token or request.cookies.get(REFRESH_COOKIE)
    if not refresh:
        raise ValidationError("Refresh token required")
    pair = services().auth.refresh(refresh, client_ip(), user_agent())
    resp = jsonify({"success": True, "message": "Tokens refreshed successfully", "data": pair})
    _set_refresh_cookie(resp, pair["refreshToken"])
    return resp, 200


@auth_bp.route("/logout", methods=["POST"])
@require_token
def route_logout():
    count = services().auth.logout(g.current_user["id"], client_ip(), user_agent())
    resp = jsonify({"success": True, "message": "Logout successful",
                    "data": {"deactivatedSessions": count}})
    _clear_refresh_cookie(resp)
    return resp, 200


@auth_bp.route("/me", methods=["GET"])
@require_token
def route_me():
    user = services().auth.get_user(g.current_user["id"])
    return jsonify({"success": True, "data": {"user": user}}), 200


@auth_bp.route("/change-password", methods=["POST"])
@require_token
def route_change_password():
    data = parse(ChangePasswordRequest, request.get_json(silent=True))
    services().auth.change_password(g.current_user["id"], data.current_password, data.new_password,
                                    client_ip(), user_agent())
    resp = jsonify({"success": True,
                    "message": "Password changed successfully. Please log in again."})
    _clear_refresh_cookie(resp)
    return resp, 200


@auth_bp.route("/verify-token", methods=["GET"])
@require_token
def route_verify_token():
    user = g.current_user
    return jsonify({
        "success": True,
        "data": {
            "valid": True,
            "userId": user["id"],
            "username": user["username"],
            "role": user["role"],
        },
    }), 200
