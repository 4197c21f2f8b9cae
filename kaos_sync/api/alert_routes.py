"""
Alerts API Blueprint
Provides REST endpoints for querying alerts, evaluating sprints and managing rules.
"""

from flask import Blueprint, current_app, jsonify, request

from kaos_sync.exceptions import NotFoundError
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

alerts_bp = Blueprint('alerts', __name__, url_prefix='/api/alerts')


def _services():
    return current_app.extensions['kaos_sync']


def _error(message: str, status: int):
    return jsonify({
        'success': False,
        'error': message
    }), status


def _parse_resolved(value):
    """'true'/'false' -> bool, anything else -> None (no filter)."""
    if value is None:
        return None
    value = value.strip().lower()
    if value in ('true', '1', 'yes'):
        return True
    if value in ('false', '0', 'no'):
        return False
    return None


@alerts_bp.route('', methods=['GET'])
def list_alerts():
    """
    Alerts of a sprint, most severe first.

    Query params:
        sprint_id: Sprint ID (required)
        resolved: true/false to filter
        page: Zero-based page (default 0)
        size: Page size (default 20)
    """
    sprint_id = request.args.get('sprint_id', type=int)
    if sprint_id is None:
        return _error("'sprint_id' is required", 400)

    try:
        alert_page = _services().alert_store.find_by_sprint(
            sprint_id,
            resolved=_parse_resolved(request.args.get('resolved')),
            page=request.args.get('page', 0, type=int),
            size=request.args.get('size', 20, type=int)
        )
        return jsonify({
            'success': True,
            **alert_page.to_dict()
        })

    except Exception as e:
        logger.error(f"Failed to list alerts for sprint {sprint_id}: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/squad/<int:squad_id>', methods=['GET'])
def list_squad_alerts(squad_id: int):
    try:
        alerts = _services().alert_store.find_by_squad(
            squad_id,
            resolved=_parse_resolved(request.args.get('resolved'))
        )
        return jsonify({
            'success': True,
            'squad_id': squad_id,
            'alerts': [a.to_dict() for a in alerts]
        })

    except Exception as e:
        logger.error(f"Failed to list alerts for squad {squad_id}: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/<int:alert_id>/resolve', methods=['PATCH'])
def resolve_alert(alert_id: int):
    try:
        alert = _services().alert_store.resolve(alert_id)
        return jsonify({
            'success': True,
            'alert': alert.to_dict()
        })

    except NotFoundError as e:
        return _error(e.message, 404)
    except Exception as e:
        logger.error(f"Failed to resolve alert {alert_id}: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/evaluate/<int:sprint_id>', methods=['POST'])
def evaluate_sprint(sprint_id: int):
    """
    Run the alert engine on demand.

    Query params:
        squad_id: Squad whose rules apply (required)
    """
    squad_id = request.args.get('squad_id', type=int)
    if squad_id is None:
        return _error("'squad_id' is required", 400)

    try:
        alerts = _services().alert_engine.evaluate(sprint_id, squad_id)
        return jsonify({
            'success': True,
            'generated': len(alerts),
            'alerts': [a.to_dict() for a in alerts]
        })

    except NotFoundError as e:
        return _error(e.message, 404)
    except Exception as e:
        logger.error(f"Alert evaluation failed for sprint {sprint_id}: {e}")
        return _error(str(e), 500)


# ========================================
# Rules
# ========================================

@alerts_bp.route('/rules', methods=['GET'])
def list_rules():
    try:
        rules = _services().rule_store.list_rules(squad_id=request.args.get('squad_id', type=int))
        return jsonify({
            'success': True,
            'rules': [r.to_dict() for r in rules]
        })

    except Exception as e:
        logger.error(f"Failed to list alert rules: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/rules', methods=['POST'])
def create_rule():
    data = request.get_json(silent=True) or {}
    try:
        rule = _services().rule_store.create(data)
        return jsonify({
            'success': True,
            'rule': rule.to_dict()
        }), 201

    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.error(f"Failed to create alert rule: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/rules/<int:rule_id>', methods=['PUT'])
def update_rule(rule_id: int):
    data = request.get_json(silent=True) or {}
    try:
        rule = _services().rule_store.update(rule_id, data)
        return jsonify({
            'success': True,
            'rule': rule.to_dict()
        })

    except NotFoundError as e:
        return _error(e.message, 404)
    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.error(f"Failed to update alert rule {rule_id}: {e}")
        return _error(str(e), 500)


@alerts_bp.route('/rules/<int:rule_id>', methods=['DELETE'])
def delete_rule(rule_id: int):
    try:
        _services().rule_store.delete(rule_id)
        return jsonify({'success': True})

    except NotFoundError as e:
        return _error(e.message, 404)
    except Exception as e:
        logger.error(f"Failed to delete alert rule {rule_id}: {e}")
        return _error(str(e), 500)
