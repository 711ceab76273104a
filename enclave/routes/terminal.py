# enclave/routes/terminal.py
from flask import Blueprint, g, jsonify, request

from enclave.auth import require_admin, require_token
from enclave.extensions import services, socketio
from enclave.filesystem import normalize_path
from enclave.schemas import (
    CommandRequest, CreateNodeRequest, CreateTerminalRequest, HistoryQuery, UpdateNodeRequest, parse,
)
from enclave.utils.security import client_ip, user_agent

terminal_bp = Blueprint("terminal", __name__)


def user_room(user_id: str) -> str:
    return "terminal-%s" % user_id


# ---------- sessions ----------

@terminal_bp.route("/sessions", methods=["POST"])
@require_token
def create_session():
    data = parse(CreateTerminalRequest, request.get_json(silent=True))
    session = services().terminal.create_session(g.current_user["id"], data.terminal_type,
                                                 client_ip(), user_agent())
    return jsonify({
        "success": True,
        "message": "Terminal session created successfully",
        "data": {
            "sessionId": session["id"],
            "terminalType": session["terminalType"],
            "currentDirectory": session["currentDirectory"],
            "startedAt": session["startedAt"],
        },
    }), 201


@terminal_bp.route("/sessions", methods=["GET"])
@require_token
def list_sessions():
    sessions = services().terminal.list_sessions(g.current_user["id"])
    return jsonify({"success": True, "data": {"sessions": sessions, "count": len(sessions)}}), 200


@terminal_bp.route("/sessions/<session_id>", methods=["GET"])
@require_token
def get_session(session_id):
    session = services().terminal.get_session(session_id, g.current_user["id"])
    session.pop("sessionData", None)
    return jsonify({"success": True, "data": {"session": session}}), 200


@terminal_bp.route("/sessions/<session_id>/commands", methods=["POST"])
@require_token
def execute_command(session_id):
    data = parse(CommandRequest, request.get_json(silent=True))
    user = g.current_user
    result = services().terminal.execute(session_id, user["id"], user["role"], data.command,
                                         client_ip(), user_agent())
    socketio.emit("command-result", result, to=user_room(user["id"]))
    return jsonify({"success": True, "message": "Command executed successfully", "data": result}), 200


@terminal_bp.route("/sessions/<session_id>", methods=["DELETE"])
@require_token
def end_session(session_id):
    user_id = g.current_user["id"]
    services().terminal.end_session(session_id, user_id)
    socketio.emit("session-ended", {"sessionId": session_id}, to=user_room(user_id))
    return jsonify({"success": True, "message": "Terminal session ended successfully"}), 200


@terminal_bp.route("/commands/history", methods=["GET"])
@require_token
def command_history():
    q = parse(HistoryQuery, request.args.to_dict())
    commands = services().terminal.command_history(g.current_user["id"], q.limit, q.session_id)
    return jsonify({"success": True, "data": {"commands": commands, "count": len(commands)}}), 200


# ---------- filesystem ----------

@terminal_bp.route("/filesystem", methods=["GET"])
@require_token
def browse_filesystem():
    path = normalize_path(request.args.get("path", "/"))
    items = services().filesystem.list_children(path, g.current_user["role"])
    return jsonify({"success": True, "data": {"path": path, "items": items, "count": len(items)}}), 200


@terminal_bp.route("/filesystem/<path:file_path>", methods=["GET"])
@require_token
def read_file(file_path):
    node = services().filesystem.read_file("/" + file_path, g.current_user["role"])
    return jsonify({"success": True, "data": {"file": node}}), 200


@terminal_bp.route("/filesystem", methods=["POST"])
@require_admin
def create_node():
    data = parse(CreateNodeRequest, request.get_json(silent=True))
    node = services().filesystem.create(data.path, data.type, data.content, data.access_level)
    return jsonify({
        "success": True,
        "message": "%s created successfully" % data.type.value,
        "data": {"item": node},
    }), 201


@terminal_bp.route("/filesystem/<node_id>", methods=["PUT"])
@require_admin
def update_node(node_id):
    data = parse(UpdateNodeRequest, request.get_json(silent=True))
    node = services().filesystem.update(node_id, data.name, data.content, data.access_level)
    return jsonify({"success": True, "message": "File updated successfully", "data": {"item": node}}), 200


@terminal_bp.route("/filesystem/<node_id>", methods=["DELETE"])
@require_admin
def delete_node(node_id):
    result = services().filesystem.delete(node_id)
    return jsonify({"success": True, "message": "File deleted successfully", "data": result}), 200
