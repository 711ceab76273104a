# enclave/app.py
import os
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from flask_limiter.errors import RateLimitExceeded
from flask_socketio import emit, join_room, disconnect
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from enclave import middleware
from enclave.auth import AuthService, auth_bp
from enclave.blocklist import IPBlocklist
from enclave.config import is_development, load_config
from enclave.db import EventType, Role, get_database_url, init_db, isoformat, utcnow
from enclave.errors import EnclaveError
from enclave.extensions import Services, cors, limiter, services, socketio
from enclave.filesystem import FilesystemStore
from enclave.notify import WebhookNotifier
from enclave.routes.security import ADMIN_ROOM, security_bp
from enclave.routes.terminal import terminal_bp, user_room
from enclave.routes.users import users_bp
from enclave.security_log import SecurityLogger
from enclave.seed import seed
from enclave.terminal import TerminalService
from enclave.tokens import TokenService
from enclave.utils.security import client_ip

logger = logging.getLogger("enclave")

BLUEPRINTS = [
    (auth_bp, "/auth"),
    (terminal_bp, "/terminal"),
    (security_bp, "/security"),
    (users_bp, "/users"),
]


def _allowed_origins(frontend_origin: str):
    # helps when the browser uses 127.0.0.1 instead of localhost
    origins = [frontend_origin]
    if "localhost" in frontend_origin:
        origins.append(frontend_origin.replace("localhost", "127.0.0.1"))
    return origins


def build_services(cfg: Dict[str, Any]) -> Services:
    session_factory = init_db(cfg.get("DATABASE_URL") or get_database_url(), echo=cfg.get("DATABASE_ECHO", False))
    tokens = TokenService(cfg)
    security_log = SecurityLogger(session_factory)
    filesystem = FilesystemStore(session_factory)
    return Services(
        config=cfg,
        session_factory=session_factory,
        tokens=tokens,
        security_log=security_log,
        auth=AuthService(session_factory, tokens, security_log, bcrypt_rounds=cfg["BCRYPT_ROUNDS"]),
        filesystem=filesystem,
        terminal=TerminalService(session_factory, filesystem, security_log,
                                 history_limit=cfg["TERMINAL_HISTORY_LIMIT"],
                                 idle_timeout_minutes=cfg["TERMINAL_IDLE_TIMEOUT_MINUTES"]),
        blocklist=IPBlocklist(default_ttl=cfg["BLOCK_TTL"], sweep_interval=cfg["BLOCKLIST_SWEEP_SECONDS"]),
        notifier=WebhookNotifier(cfg.get("SECURITY_WEBHOOK_URL"), timeout=cfg["WEBHOOK_TIMEOUT"],
                                 environment=cfg["ENV"]),
    )


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(EnclaveError)
    def handle_enclave_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", type(e).__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        logger.warning("Rate limit exceeded: %s", e.description)
        middleware.log_event(EventType.SUSPICIOUS, None, "Rate limit exceeded", {"limit": str(e.description)})
        return jsonify({"success": False, "error": "Too many requests, please try again later"}), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error: %s", e)
        message = str(e) if is_development(app.config) else "Internal server error"
        return jsonify({"success": False, "error": message}), 500


def register_socket_handlers(sio) -> None:
    def _join_with_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        try:
            user = services().auth.authenticate(token)
        except EnclaveError as e:
            logger.info("Socket join rejected: %s", e.message)
            return None
        room = user_room(user["id"])
        join_room(room)
        if user["role"] == Role.ADMIN.value:
            join_room(ADMIN_ROOM)
        logger.info("Socket joined room %s", room)
        return {"room": room, "userId": user["id"]}

    def _blocked() -> bool:
        ip = client_ip()
        if services().blocklist.is_blocked(ip):
            logger.warning("Blocked IP attempted socket access: %s", ip)
            return True
        return False

    @sio.on("connect")
    def on_connect(auth=None):
        if _blocked():
            return False
        token = auth.get("token") if isinstance(auth, dict) else None
        if token is None:
            return True
        joined = _join_with_token(token)
        if joined is None:
            return False
        emit("joined", joined)
        return True

    @sio.on("join-terminal")
    def on_join_terminal(data=None):
        if _blocked():
            disconnect()
            return
        token = data.get("token") if isinstance(data, dict) else None
        joined = _join_with_token(token)
        if joined is None:
            emit("error", {"error": "Invalid or expired token"})
            disconnect()
            return
        emit("joined", joined)

    @sio.on("disconnect")
    def on_disconnect(*args):
        logger.debug("Socket disconnected")


register_socket_handlers(socketio)


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    cfg = load_config(overrides)
    logging.getLogger("enclave").setLevel(cfg["LOG_LEVEL"])

    app = Flask(__name__)
    app.config.update(cfg)
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    if cfg["TRUST_PROXY"]:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    app.extensions["enclave"] = build_services(cfg)

    origins = _allowed_origins(cfg["FRONTEND_ORIGIN"])
    cors.init_app(app, resources={r"/*": {"origins": origins}}, supports_credentials=True)
    limiter.init_app(app)
    socketio.init_app(app, cors_allowed_origins=origins, async_mode="threading")
    middleware.init_app(app)

    prefix = (cfg.get("API_PREFIX") or "").rstrip("/")
    for bp, url_prefix in BLUEPRINTS:
        app.register_blueprint(bp, url_prefix=url_prefix)
        if prefix:
            app.register_blueprint(bp, url_prefix=prefix + url_prefix, name="api_" + bp.name)

    @limiter.exempt
    def health():
        return jsonify({
            "status": "OK",
            "timestamp": isoformat(utcnow()),
            "environment": app.config["ENV"],
        }), 200

    app.add_url_rule("/health", "health", health)
    if prefix:
        app.add_url_rule(prefix + "/health", "api_health", health)

    register_error_handlers(app)

    if cfg["SEED_ON_STARTUP"]:
        seed(app.extensions["enclave"].session_factory, bcrypt_rounds=cfg["BCRYPT_ROUNDS"])

    logger.info("ENCLAVE app created (env=%s)", cfg["ENV"])
    return app


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app = create_app()
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 5000))
    debug = is_development(app.config)
    logger.info("Starting app: host=%s port=%s debug=%s", host, port, debug)
    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)
