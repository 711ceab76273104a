# enclave/middleware.py

import json
import logging
import re
from typing import Any, Dict, Optional

from flask import g, jsonify, request

from enclave.db import EventType, isoformat, utcnow
from enclave.extensions import services
from enclave.utils.security import client_ip, user_agent

logger = logging.getLogger("enclave.security")

# paths that stay reachable for blocked clients
UNBLOCKED_PREFIXES = ("/health", "/api/health")

ATTACK_PATTERNS = [
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"\.\./|\.\.\\"),
    re.compile(r"%2e%2e|%c0%af", re.IGNORECASE),
    re.compile(r"\bunion\b.+\bselect\b", re.IGNORECASE),
    re.compile(r"\b(or|and)\s+\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r";\s*(drop|delete|insert|update)\b", re.IGNORECASE),
    re.compile(r"\$\(|`"),
]


def log_event(event_type, user_id: Optional[str], description: str,
              metadata: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Record a security event stamped with the current request's origin."""
    meta = dict(metadata or {})
    meta.setdefault("method", request.method)
    meta.setdefault("url", request.full_path.rstrip("?"))
    meta.setdefault("timestamp", isoformat(utcnow()))
    return services().security_log.record(event_type, user_id, description,
                                          client_ip(), user_agent(), meta)


def detect_attack_patterns(url: str, body: str) -> Optional[str]:
    for pattern in ATTACK_PATTERNS:
        if pattern.search(url) or (body and pattern.search(body)):
            return pattern.pattern
    return None


def check_blocklist():
    path = request.path or ""
    if path.startswith(UNBLOCKED_PREFIXES):
        return None
    ip = client_ip()
    if services().blocklist.is_blocked(ip):
        logger.warning("Blocked IP attempted access: %s %s", ip, path)
        return jsonify({"success": False, "error": "Access denied"}), 403
    return None


def inspect_request():
    g.request_ip = client_ip()
    url = request.full_path or request.path
    body = ""
    if request.is_json:
        payload = request.get_json(silent=True)
        if payload is not None:
            body = json.dumps(payload)
    matched = detect_attack_patterns(url, body)
    if matched:
        logger.warning("Potential attack pattern detected from %s: %s %s", g.request_ip, request.method, url)
        log_event(EventType.SUSPICIOUS, None, "Potential attack pattern detected", {"pattern": matched})
    return None


def init_app(app):
    app.before_request(check_blocklist)
    app.before_request(inspect_request)
    return app
