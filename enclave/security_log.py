# enclave/security_log.py

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from enclave.db import EventType, SecurityLog, User, session_scope, utcnow, isoformat

logger = logging.getLogger("enclave.security")


class SecurityLogger:
    """Append-only audit log of auth, command and suspicious-activity events."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(self, event_type, user_id: Optional[str], description: str,
               ip: Optional[str] = None, agent: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Persist one event. Never raises: a failed write is logged and dropped."""
        event_type = EventType(event_type).value
        try:
            with session_scope(self.session_factory) as session:
                row = SecurityLog(
                    user_id=user_id,
                    event_type=event_type,
                    description=description,
                    ip_address=ip or "unknown",
                    user_agent=agent,
                    meta=metadata or None,
                )
                session.add(row)
                session.flush()
                out = row.to_dict()
        except SQLAlchemyError as e:
            logger.warning("Failed to record security event %s (%s): %s", event_type, description, e)
            return None

        level = logging.WARNING if event_type in (EventType.SUSPICIOUS.value, EventType.ACCESS_DENIED.value) else logging.INFO
        logger.log(level, "Security event %s user=%s ip=%s: %s", event_type, user_id, ip, description)
        return out

    # ---------- queries (admin) ----------

    def list_logs(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                  event_type: Optional[str] = None, user_id: Optional[str] = None,
                  limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            q = session.query(SecurityLog, User.username).outerjoin(User, SecurityLog.user_id == User.id)
            if start_date:
                q = q.filter(SecurityLog.created_at >= start_date)
            if end_date:
                q = q.filter(SecurityLog.created_at <= end_date)
            if event_type:
                q = q.filter(SecurityLog.event_type == event_type)
            if user_id:
                q = q.filter(SecurityLog.user_id == user_id)
            total = q.count()
            rows = q.order_by(SecurityLog.created_at.desc()).offset(offset).limit(limit).all()
            logs = [log.to_dict(username=username) for log, username in rows]
        return {
            "logs": logs,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "pages": int(math.ceil(total / float(limit))) if limit else 0,
            },
        }

    def stats(self) -> Dict[str, Any]:
        now = utcnow()
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)
        with session_scope(self.session_factory) as session:
            total = session.query(func.count(SecurityLog.id)).scalar() or 0
            recent = session.query(func.count(SecurityLog.id)).filter(SecurityLog.created_at >= day_ago).scalar() or 0
            by_type = dict(
                session.query(SecurityLog.event_type, func.count(SecurityLog.id))
                .group_by(SecurityLog.event_type).all()
            )
            failed_logins = (
                session.query(func.count(SecurityLog.id))
                .filter(SecurityLog.event_type == EventType.ACCESS_DENIED.value,
                        SecurityLog.created_at >= day_ago)
                .scalar() or 0
            )
            suspicious = (
                session.query(func.count(SecurityLog.id))
                .filter(SecurityLog.event_type == EventType.SUSPICIOUS.value,
                        SecurityLog.created_at >= week_ago)
                .scalar() or 0
            )
            unique_ips = (
                session.query(func.count(func.distinct(SecurityLog.ip_address)))
                .filter(SecurityLog.created_at >= day_ago)
                .scalar() or 0
            )
            recent_rows = (
                session.query(SecurityLog, User.username)
                .outerjoin(User, SecurityLog.user_id == User.id)
                .filter(SecurityLog.created_at >= day_ago)
                .order_by(SecurityLog.created_at.desc())
                .limit(10)
                .all()
            )
            recent_events = [{
                "id": log.id,
                "eventType": log.event_type,
                "description": log.description,
                "ipAddress": log.ip_address,
                "username": username or "Anonymous",
                "timestamp": isoformat(log.created_at),
            } for log, username in recent_rows]
        return {
            "totalLogs": total,
            "recentLogs": recent,
            "logsByType": by_type,
            "failedLogins": failed_logins,
            "suspiciousActivity": suspicious,
            "uniqueIPs": unique_ips,
            "recentEvents": recent_events,
        }

    def recent_for_user(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(SecurityLog)
                .filter(SecurityLog.user_id == user_id)
                .order_by(SecurityLog.created_at.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]
