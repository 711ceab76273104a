# enclave/routes/security.py
import logging

from flask import Blueprint, g, jsonify, request

from enclave.auth import require_admin
from enclave.db import EventType, TerminalSession, User, UserSession, isoformat, session_scope, utcnow
from enclave.errors import EnclaveError, ValidationError
from enclave.extensions import services, socketio
from enclave.middleware import log_event
from enclave.notify import WebhookError
from enclave.schemas import AlertRequest, BlockRequest, SecurityLogQuery, WebhookTestRequest, parse

logger = logging.getLogger("enclave.security")

security_bp = Blueprint("security", __name__)

# sockets of authenticated admins; alerts are pushed here only
ADMIN_ROOM = "security-admins"


class WebhookDeliveryError(EnclaveError):
    status_code = 502
    default_message = "Failed to send webhook test"


@security_bp.route("/logs", methods=["GET"])
@require_admin
def get_logs():
    q = parse(SecurityLogQuery, request.args.to_dict())
    data = services().security_log.list_logs(
        start_date=q.start_date, end_date=q.end_date,
        event_type=q.event_type.value if q.event_type else None,
        user_id=q.user_id, limit=q.limit, offset=q.offset,
    )
    return jsonify({"success": True, "data": data}), 200


@security_bp.route("/stats", methods=["GET"])
@require_admin
def get_stats():
    return jsonify({"success": True, "data": services().security_log.stats()}), 200


def _user_summary(user):
    return {"id": user.id, "username": user.username, "email": user.email, "role": user.role}


@security_bp.route("/active-sessions", methods=["GET"])
@require_admin
def active_sessions():
    now = utcnow()
    grouped = {}
    with session_scope(services().session_factory) as session:
        auth_rows = (
            session.query(UserSession, User)
            .join(User, UserSession.user_id == User.id)
            .filter(UserSession.is_active.is_(True), UserSession.expires_at >= now)
            .order_by(UserSession.created_at.desc())
            .all()
        )
        terminal_rows = (
            session.query(TerminalSession, User)
            .join(User, TerminalSession.user_id == User.id)
            .filter(TerminalSession.is_active.is_(True))
            .order_by(TerminalSession.last_activity.desc())
            .all()
        )
        for row, user in auth_rows:
            entry = grouped.setdefault(user.id, {
                "user": _user_summary(user), "authSessions": [], "terminalSessions": [],
                "lastActivity": row.created_at,
            })
            entry["authSessions"].append({
                "id": row.id,
                "ipAddress": row.ip_address,
                "userAgent": row.user_agent,
                "createdAt": isoformat(row.created_at),
                "expiresAt": isoformat(row.expires_at),
            })
            entry["lastActivity"] = max(entry["lastActivity"], row.created_at)
        for row, user in terminal_rows:
            entry = grouped.setdefault(user.id, {
                "user": _user_summary(user), "authSessions": [], "terminalSessions": [],
                "lastActivity": row.last_activity,
            })
            entry["terminalSessions"].append({
                "id": row.id,
                "terminalType": row.terminal_type,
                "currentDirectory": row.current_directory,
                "startedAt": isoformat(row.started_at),
                "lastActivity": isoformat(row.last_activity),
            })
            entry["lastActivity"] = max(entry["lastActivity"], row.last_activity)

    active_users = sorted(grouped.values(), key=lambda e: e["lastActivity"], reverse=True)
    for entry in active_users:
        entry["lastActivity"] = isoformat(entry["lastActivity"])
    return jsonify({
        "success": True,
        "data": {
            "activeUsers": active_users,
            "totalAuthSessions": len(auth_rows),
            "totalTerminalSessions": len(terminal_rows),
            "totalActiveUsers": len(active_users),
        },
    }), 200


@security_bp.route("/sessions/<session_id>", methods=["DELETE"])
@require_admin
def terminate_session(session_id):
    row = services().auth.terminate_session(session_id)
    log_event(EventType.LOGOUT, row["userId"], "Session terminated by administrator",
              {"sessionId": session_id, "adminId": g.current_user["id"]})
    return jsonify({"success": True, "message": "Session terminated successfully"}), 200


@security_bp.route("/alert", methods=["POST"])
@require_admin
def send_alert():
    data = parse(AlertRequest, request.get_json(silent=True))
    admin = g.current_user
    event = log_event(EventType.SUSPICIOUS, admin["id"], "Admin alert: %s" % data.title, {
        "title": data.title,
        "description": data.description,
        "level": data.level,
        "targetUserId": data.user_id,
        "manualAlert": True,
    })
    notifier = services().notifier
    payload = notifier.build_payload("Security Alert: %s" % data.title, data.description, data.level, {
        "Triggered By": admin["username"],
        "Target User": data.user_id or "N/A",
    })
    notifier.send_async(payload)
    socketio.emit("security-alert", {"title": data.title, "level": data.level,
                                     "description": data.description}, to=ADMIN_ROOM)
    return jsonify({
        "success": True,
        "message": "Security alert sent successfully",
        "data": {"event": event, "webhookQueued": notifier.configured},
    }), 200


@security_bp.route("/webhook-test", methods=["POST"])
@require_admin
def webhook_test():
    data = parse(WebhookTestRequest, request.get_json(silent=True))
    notifier = services().notifier
    if not notifier.configured:
        raise ValidationError("Security webhook URL not configured")
    payload = notifier.build_payload("Security Test Message", data.message, "INFO",
                                     {"Test Type": "Manual Webhook Test"})
    try:
        status = notifier.send(payload)
    except WebhookError as e:
        logger.error("Webhook test failed: %s", e)
        raise WebhookDeliveryError()
    return jsonify({"success": True, "message": "Webhook test sent successfully",
                    "data": {"status": status}}), 200


# ---------- IP blocklist ----------

@security_bp.route("/blocks", methods=["GET"])
@require_admin
def list_blocks():
    blocks = [{"ip": ip, "unblockAt": unblock_at}
              for ip, unblock_at in sorted(services().blocklist.active().items())]
    return jsonify({"success": True, "data": {"blocks": blocks, "count": len(blocks)}}), 200


@security_bp.route("/blocks", methods=["POST"])
@require_admin
def block_ip():
    data = parse(BlockRequest, request.get_json(silent=True))
    unblock_at = services().blocklist.add(data.ip, data.ttl)
    log_event(EventType.SUSPICIOUS, g.current_user["id"], "IP blocked: %s" % data.ip,
              {"blockedIp": data.ip, "ttl": data.ttl, "reason": data.reason or "manual_block"})
    return jsonify({"success": True, "data": {"ip": data.ip, "unblockAt": unblock_at}}), 201


@security_bp.route("/blocks/<ip>", methods=["DELETE"])
@require_admin
def unblock_ip(ip):
    removed = services().blocklist.remove(ip)
    return jsonify({"success": True, "data": {"ip": ip, "removed": removed}}), 200
