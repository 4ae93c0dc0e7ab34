#!/usr/bin/env python3
"""Intent API consumed by the bot front end."""
import logging

from flask import Blueprint, jsonify, request, current_app

from orvex.errors import ValidationError
from orvex.models import SETTINGS, WALLET
from orvex.services.audit import audit_logger
from orvex.services.intents import parse_intent

logger = logging.getLogger("api")

api_bp = Blueprint('api', __name__)


@api_bp.route('/api/health')
def api_health():
    return jsonify({"status": "ok"})


@api_bp.route('/api/users/<user_id>/intents', methods=['POST'])
def api_dispatch_intent(user_id):
    payload = request.get_json(silent=True)
    try:
        intent = parse_intent(payload)
    except ValidationError as e:
        return jsonify({"success": False, "intent": (payload or {}).get("type") if isinstance(payload, dict) else None,
                        "error": e.to_dict()}), 400

    try:
        result = current_app.extensions['orvex'].dispatcher.dispatch(user_id, intent)
        return jsonify(result)
    except Exception as e:
        logger.exception(f"Intent {intent.type} failed for user {user_id}")
        audit_logger.log_system_error(str(e), {"intent": intent.type, "user": user_id})
        return jsonify({"success": False, "intent": intent.type,
                        "error": {"code": "INTERNAL_ERROR", "message": "Internal error", "details": {}}}), 500


@api_bp.route('/api/stats')
def api_stats():
    """User and wallet totals for the operator."""
    db = current_app.extensions['orvex'].db
    return jsonify({
        "users": db.count_records(SETTINGS),
        "wallets": db.count_records(WALLET),
    })
