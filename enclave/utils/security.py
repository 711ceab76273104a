import hashlib
import re
import logging
from typing import Optional, Tuple

import bcrypt
from flask import request

logger = logging.getLogger("enclave.security")

# ---------- tokens ----------

def hash_token(token: str) -> str:
    """sha256 hex digest; sessions only ever store this, never the token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------- passwords ----------

ALLOWED_SPECIALS = r"!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>\/\?`~"
_has_letter_re = re.compile(r"[A-Za-z]")
_has_digit_re = re.compile(r"[0-9]")
_has_special_re = re.compile("[" + ALLOWED_SPECIALS + "]")
_username_re = re.compile(r"^[A-Za-z0-9_]{3,30}$")


def validate_password(pw: str) -> Tuple[bool, str]:
    if not pw or not isinstance(pw, str):
        return False, "Password required"
    if len(pw) < 8:
        return False, "Password must be at least 8 characters long"
    if not _has_letter_re.search(pw):
        return False, "Password must include at least one letter"
    if not _has_digit_re.search(pw):
        return False, "Password must include at least one number"
    if not _has_special_re.search(pw):
        return False, "Password must include at least one special character (e.g. !@#$%)"
    return True, ""


def validate_username(username: str) -> Tuple[bool, str]:
    if not username or not isinstance(username, str):
        return False, "Username required"
    if not _username_re.match(username):
        return False, "Username must be 3-30 characters of letters, numbers or underscore"
    return True, ""


def hash_password(password: str, rounds: int = 12) -> str:
    if isinstance(password, str):
        password = password.encode("utf-8")
    h = bcrypt.hashpw(password, bcrypt.gensalt(rounds=rounds))
    return h.decode("utf-8")


def check_password(password: str, stored_hash: str) -> bool:
    if not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


# ---------- input sanitization ----------

_angle_re = re.compile(r"[<>]")
_js_scheme_re = re.compile(r"javascript:", re.IGNORECASE)
_event_handler_re = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_input(text: Optional[str]) -> str:
    if not isinstance(text, str):
        return ""
    out = _angle_re.sub("", text)
    out = _js_scheme_re.sub("", out)
    out = _event_handler_re.sub("", out)
    return out.strip()


# ---------- request context ----------

def client_ip() -> str:
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def user_agent() -> Optional[str]:
    return request.headers.get("User-Agent")
