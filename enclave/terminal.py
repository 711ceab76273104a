# enclave/terminal.py

import logging
import random
from collections import namedtuple
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from enclave.db import EventType, TerminalSession, TerminalType, isoformat, session_scope, utcnow
from enclave.errors import NotFoundOrDenied, SessionNotFound
from enclave.filesystem import FilesystemStore, resolve_path
from enclave.utils.security import sanitize_input

logger = logging.getLogger("enclave.terminal")

CLEAR_SCREEN = "\x1b[2J\x1b[0f"
MAX_WRITE_ATTEMPTS = 3

# ``cwd`` is only set by commands that move the working directory
CommandResult = namedtuple("CommandResult", ["output", "success", "cwd"], defaults=(None,))

ParsedCommand = namedtuple("ParsedCommand", ["verb", "args", "raw"])


class CommandContext:
    """What a handler may look at: the session's directory, the caller's role and the filesystem."""

    def __init__(self, session_id: str, user_id: str, role: str, cwd: str,
                 filesystem: FilesystemStore, now: Optional[datetime] = None):
        self.session_id = session_id
        self.user_id = user_id
        self.role = role
        self.cwd = cwd or "/"
        self.filesystem = filesystem
        self.now = now or utcnow()


def parse_command(text: str) -> ParsedCommand:
    parts = text.strip().split()
    if not parts:
        return ParsedCommand("", [], "")
    return ParsedCommand(parts[0].lower(), parts[1:], text.strip())


class CommandTable:
    def __init__(self, name: str, handlers: Dict[str, Callable], unknown: str):
        self.name = name
        self.handlers = handlers
        self.unknown = unknown

    @property
    def verbs(self) -> List[str]:
        return sorted(self.handlers)

    def dispatch(self, ctx: CommandContext, parsed: ParsedCommand) -> CommandResult:
        handler = self.handlers.get(parsed.verb)
        if handler is None:
            return CommandResult(self.unknown.format(cmd=parsed.verb), False)
        return handler(ctx, parsed.args)


def _text(output: str) -> Callable:
    def handler(ctx, args):
        return CommandResult(output, True)
    return handler


def _clear(ctx, args):
    return CommandResult(CLEAR_SCREEN, True)


# ---------- filesystem terminal ----------

def _fs_list(ctx, args):
    target = resolve_path(ctx.cwd, args[0]) if args else ctx.cwd
    try:
        items = ctx.filesystem.list_children(target, ctx.role)
    except NotFoundOrDenied:
        return CommandResult("Directory not found: %s" % (args[0] if args else target), False)
    if not items:
        return CommandResult("Directory is empty.", True)
    lines = []
    for item in items:
        prefix = "DIR" if item["type"] == "DIRECTORY" else "FILE"
        stamp = datetime.fromisoformat(item["updatedAt"].rstrip("Z")) if item.get("updatedAt") else ctx.now
        lines.append("%s %s %s" % (prefix.ljust(4), item["name"].ljust(20), stamp.strftime("%m/%d/%Y")))
    return CommandResult("\n".join(lines), True)


def _fs_cd(ctx, args):
    if not args:
        return CommandResult("Usage: cd <directory>", False)
    target = args[0]
    new_path = resolve_path(ctx.cwd, target)
    if not ctx.filesystem.is_directory(new_path, ctx.role):
        return CommandResult("Directory not found: %s" % target, False)
    return CommandResult("Changed directory to: %s" % new_path, True, new_path)


def _fs_cat(ctx, args):
    if not args:
        return CommandResult("Usage: cat <filename>", False)
    filename = args[0]
    try:
        node = ctx.filesystem.read_file(resolve_path(ctx.cwd, filename), ctx.role)
    except NotFoundOrDenied:
        return CommandResult("File not found: %s" % filename, False)
    return CommandResult(node.get("content") or "", True)


def _fs_pwd(ctx, args):
    return CommandResult(ctx.cwd, True)


FILESYSTEM_HELP = """Available commands:
  ls, dir - List directory contents
  cd <path> - Change directory
  cat, type <file> - Display file contents
  pwd - Print working directory
  help - Show this help message
  clear - Clear terminal screen"""


# ---------- military terminal ----------

def _mil_status(ctx, args):
    return CommandResult("""MILITARY TERMINAL STATUS
=======================
System: ONLINE
Security: ACTIVE
Clearance: VERIFIED
Last Sync: %s

Active Units: 12
Ready Units: 8
Deployed Units: 4""" % isoformat(ctx.now), True)


def _mil_deploy(ctx, args):
    if not args:
        return CommandResult("Usage: deploy <unit_id>", False)
    return CommandResult("""Unit %s deployment initiated.
Authorization: GRANTED
ETA: 15 minutes
Status: PENDING""" % args[0], True)


MILITARY_SCAN = """Scanning perimeter...
Network scan complete.
Hosts detected: 8
Threat level: MINIMAL
Security protocols: ACTIVE"""

MILITARY_HELP = """Military Commands:
  status - Show system status
  deploy <unit> - Deploy military unit
  scan - Perform network scan
  help - Show this help message
  clear - Clear terminal screen"""


# ---------- research terminal ----------

RESEARCH_ANALYZE = """RESEARCH ANALYSIS
=================
Sample Analysis: IN PROGRESS
Completion: 67%
Results: PENDING
Anomalies Detected: 2

Recommendation: Continue monitoring"""

RESEARCH_PROJECTS = """Current Research Projects:
1. Project Phoenix - System Integration
2. Security Protocol Enhancement
3. Data Analysis Optimization

All projects proceeding normally."""

RESEARCH_DATA = """Database Statistics:
  Records: 1,247,892
  Queries Today: 3,421
  Response Time: 12ms average
  Status: OPTIMAL"""

RESEARCH_HELP = """Research Commands:
  analyze - Perform data analysis
  research - Show current projects
  data - Display database statistics
  help - Show this help message
  clear - Clear terminal screen"""


# ---------- emergency terminal ----------

def _emg_status(ctx, args):
    level = "CRITICAL" if random.random() > 0.7 else "WARNING"
    power = "ONLINE" if random.random() > 0.5 else "OFFLINE"
    return CommandResult("""⚠️ EMERGENCY SYSTEM STATUS ⚠️
============================
Alert Level: %s
Systems: DEGRADED
Evacuation: STANDBY
Emergency Power: %s

⚠️ Proceed with caution""" % (level, power), True)


def _emg_report(ctx, args):
    return CommandResult("""EMERGENCY REPORT
================
Time: %s
Status: System Emergency
Cause: Unknown
Response: Emergency protocols engaged
Casualties: Unknown

Report transmitted to command.""" % isoformat(ctx.now), True)


EMERGENCY_PROTOCOLS = """EMERGENCY PROTOCOLS ACTIVATED
================================
All non-essential systems SHUTDOWN
Emergency lighting: ONLINE
Evacuation routes: CLEAR
Communication: EMERGENCY CHANNEL ONLY

Stay calm. Follow procedures."""

EMERGENCY_HELP = """Emergency Commands:
  status - Emergency status
  emergency - Activate emergency protocols
  report - Send emergency report
  help - Show this help message
  clear - Clear terminal screen"""


COMMAND_TABLES: Dict[TerminalType, CommandTable] = {
    TerminalType.FILESYSTEM: CommandTable(
        "FILESYSTEM",
        {
            "ls": _fs_list,
            "dir": _fs_list,
            "cd": _fs_cd,
            "cat": _fs_cat,
            "type": _fs_cat,
            "pwd": _fs_pwd,
            "help": _text(FILESYSTEM_HELP),
            "clear": _clear,
        },
        "Command not found: {cmd}. Type 'help' for available commands.",
    ),
    TerminalType.MILITARY: CommandTable(
        "MILITARY",
        {
            "status": _mil_status,
            "deploy": _mil_deploy,
            "scan": _text(MILITARY_SCAN),
            "help": _text(MILITARY_HELP),
            "clear": _clear,
        },
        "Access denied. Command '{cmd}' not recognized.",
    ),
    TerminalType.RESEARCHER: CommandTable(
        "RESEARCHER",
        {
            "analyze": _text(RESEARCH_ANALYZE),
            "research": _text(RESEARCH_PROJECTS),
            "data": _text(RESEARCH_DATA),
            "help": _text(RESEARCH_HELP),
            "clear": _clear,
        },
        "Research module cannot process: {cmd}",
    ),
    TerminalType.EMERGENCY: CommandTable(
        "EMERGENCY",
        {
            "status": _emg_status,
            "emergency": _text(EMERGENCY_PROTOCOLS),
            "report": _emg_report,
            "help": _text(EMERGENCY_HELP),
            "clear": _clear,
        },
        "EMERGENCY: Command '{cmd}' not available in emergency mode.",
    ),
}


class TerminalService:
    def __init__(self, session_factory, filesystem: FilesystemStore, security_log,
                 history_limit: int = 100, idle_timeout_minutes: int = 60):
        self.session_factory = session_factory
        self.filesystem = filesystem
        self.security_log = security_log
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1, got %r" % history_limit)
        self.history_limit = history_limit
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes) if idle_timeout_minutes else None

    # ---------- lifecycle ----------

    def create_session(self, user_id: str, terminal_type: TerminalType,
                       ip: Optional[str] = None, agent: Optional[str] = None) -> Dict[str, Any]:
        terminal_type = TerminalType(terminal_type)
        now = utcnow()
        with session_scope(self.session_factory) as session:
            row = TerminalSession(
                user_id=user_id,
                terminal_type=terminal_type.value,
                session_data={"initialized": True, "startTime": isoformat(now),
                              "ipAddress": ip, "userAgent": agent},
                command_history=[],
                current_directory="/",
                is_active=True,
                started_at=now,
                last_activity=now,
            )
            session.add(row)
            session.flush()
            out = row.to_dict()

        self.security_log.record(EventType.LOGIN, user_id,
                                 "Terminal session created: %s" % terminal_type.value, ip, agent,
                                 {"sessionId": out["id"], "terminalType": terminal_type.value})
        logger.info("Terminal session created: %s for user %s (%s)", out["id"], user_id, terminal_type.value)
        return out

    def _is_idle(self, row: TerminalSession, now: datetime) -> bool:
        return bool(self.idle_timeout and row.last_activity and row.last_activity < now - self.idle_timeout)

    def get_session(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """The caller's active session; idle sessions are closed on sight."""
        now = utcnow()
        with session_scope(self.session_factory) as session:
            row = (
                session.query(TerminalSession)
                .filter(TerminalSession.id == session_id,
                        TerminalSession.user_id == user_id,
                        TerminalSession.is_active.is_(True))
                .first()
            )
            if row is None:
                raise SessionNotFound()
            idle = self._is_idle(row, now)
            if idle:
                row.is_active = False
            out = row.to_dict()
        if idle:
            logger.info("Terminal session %s expired after inactivity", session_id)
            raise SessionNotFound()
        return out

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        now = utcnow()
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(TerminalSession)
                .filter(TerminalSession.user_id == user_id, TerminalSession.is_active.is_(True))
                .order_by(TerminalSession.started_at.desc())
                .all()
            )
            out = []
            for row in rows:
                if self._is_idle(row, now):
                    row.is_active = False
                    continue
                out.append(row.to_dict(include_history=False))
        return out

    def end_session(self, session_id: str, user_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            row = (
                session.query(TerminalSession)
                .filter(TerminalSession.id == session_id,
                        TerminalSession.user_id == user_id,
                        TerminalSession.is_active.is_(True))
                .first()
            )
            if row is None:
                raise SessionNotFound()
            row.is_active = False
            row.last_activity = utcnow()
            out = row.to_dict(include_history=False)
        logger.info("Terminal session ended: %s for user %s", session_id, user_id)
        return out

    # ---------- command execution ----------

    def execute(self, session_id: str, user_id: str, role: str, command: str,
                ip: Optional[str] = None, agent: Optional[str] = None) -> Dict[str, Any]:
        snapshot = self.get_session(session_id, user_id)

        sanitized = sanitize_input(command)
        if sanitized != command.strip():
            logger.warning("Command sanitized: %r -> %r (user=%s session=%s)",
                           command, sanitized, user_id, session_id)

        parsed = parse_command(sanitized)
        ctx = CommandContext(session_id, user_id, role, snapshot["currentDirectory"], self.filesystem)
        table = COMMAND_TABLES[TerminalType(snapshot["terminalType"])]
        try:
            result = table.dispatch(ctx, parsed)
        except Exception as e:
            # a failing handler is reported as a command result, never as a request error
            logger.exception("Command %r failed in session %s: %s", sanitized, session_id, e)
            result = CommandResult("Error: Command execution failed", False)

        if not self._record(session_id, sanitized, result):
            result = CommandResult("Error: Failed to update terminal session", False)

        self.security_log.record(EventType.COMMAND, user_id, "Command executed: %s" % sanitized, ip, agent,
                                 {"sessionId": session_id, "terminalType": snapshot["terminalType"],
                                  "success": result.success})
        logger.info("Command executed: %s in session %s", sanitized, session_id)

        return {
            "command": sanitized,
            "output": result.output,
            "success": result.success,
            "timestamp": isoformat(ctx.now),
            "sessionId": session_id,
            "currentDirectory": result.cwd or snapshot["currentDirectory"],
        }

    def _record(self, session_id: str, command: str, result: CommandResult) -> bool:
        """Append to history (and move the cwd) atomically; retried when the row changed underneath."""
        now = utcnow()
        entry = {"command": command, "timestamp": isoformat(now),
                 "outcome": "success" if result.success else "error"}
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                with session_scope(self.session_factory) as session:
                    row = session.get(TerminalSession, session_id)
                    if row is None:
                        return False
                    history = list(row.command_history or [])
                    history.append(entry)
                    row.command_history = history[-self.history_limit:]
                    if result.cwd is not None:
                        row.current_directory = result.cwd
                    row.last_activity = now
                return True
            except StaleDataError:
                logger.warning("Concurrent update on terminal session %s (attempt %d)", session_id, attempt)
            except SQLAlchemyError as e:
                logger.exception("Failed to persist command for session %s: %s", session_id, e)
                return False
        return False

    def command_history(self, user_id: str, limit: int = 50,
                        session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first history merged across the caller's active sessions."""
        with session_scope(self.session_factory) as session:
            q = session.query(TerminalSession).filter(
                TerminalSession.user_id == user_id, TerminalSession.is_active.is_(True))
            if session_id:
                q = q.filter(TerminalSession.id == session_id)
            rows = q.order_by(TerminalSession.last_activity.desc()).all()
            commands = []
            for row in rows:
                for item in row.command_history or []:
                    entry = dict(item)
                    entry["sessionId"] = row.id
                    entry["terminalType"] = row.terminal_type
                    commands.append(entry)
        commands.sort(key=lambda c: c.get("timestamp") or "", reverse=True)
        return commands[:limit]
