# enclave/extensions.py
"""Flask extensions and the per-app service container."""

from flask import current_app
from flask_cors import CORS
from flask_limiter import Limiter
from flask_socketio import SocketIO

from enclave.utils.security import client_ip


def _default_limit() -> str:
    return current_app.config.get("RATE_LIMIT", "100 per 15 minutes")


def auth_limit() -> str:
    return current_app.config.get("AUTH_RATE_LIMIT", "10 per 15 minutes")


# storage is chosen per app from RATELIMIT_STORAGE_URI at init_app time
limiter = Limiter(key_func=client_ip, default_limits=[_default_limit])
socketio = SocketIO()
cors = CORS()


class Services:
    """Everything a request handler needs, built once per application."""

    def __init__(self, config, session_factory, tokens, security_log, auth,
                 filesystem, terminal, blocklist, notifier):
        self.config = config
        self.session_factory = session_factory
        self.tokens = tokens
        self.security_log = security_log
        self.auth = auth
        self.filesystem = filesystem
        self.terminal = terminal
        self.blocklist = blocklist
        self.notifier = notifier


def services() -> Services:
    return current_app.extensions["enclave"]
