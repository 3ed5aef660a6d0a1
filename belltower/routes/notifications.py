import logging

from flask import Blueprint, jsonify

from belltower import state

log = logging.getLogger("belltower.routes.notifications")

bp = Blueprint("notifications", __name__)


def _bell_view(hub) -> dict:
    return {
        "connected": hub.is_connected,
        "error": hub.error,
        "unread": hub.unread_count,
        "notifications": [n.to_dict() for n in hub.notifications],
    }


def _require_hub():
    if state.hub is None:
        return None, (jsonify({"error": "notification hub not running"}), 503)
    return state.hub, None


@bp.route("/notifications")
def list_notifications():
    hub, err = _require_hub()
    if err:
        return err
    return jsonify(_bell_view(hub))


@bp.route("/notifications/mark-read", methods=["POST"])
def mark_read():
    hub, err = _require_hub()
    if err:
        return err
    hub.mark_all_read()
    return jsonify(_bell_view(hub))


@bp.route("/notifications/refresh", methods=["POST"])
def refresh_history():
    hub, err = _require_hub()
    if err:
        return err
    hub.load_history()
    return jsonify(_bell_view(hub))


@bp.route("/notifications/clear-error", methods=["POST"])
def clear_error():
    hub, err = _require_hub()
    if err:
        return err
    hub.clear_error()
    return jsonify({"ok": True})


@bp.route("/status")
def status():
    ctx = state.context
    if ctx is None:
        return jsonify({"error": "notification hub not running"}), 503
    return jsonify({
        "user_id": ctx.manager.user_id,
        "state": ctx.manager.state,
        "connected": ctx.registry.connected,
        "error": ctx.registry.error,
        "subscribers": ctx.registry.subscriber_count,
        "settings": ctx.settings.to_dict(),
    })
