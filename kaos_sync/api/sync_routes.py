"""
Sync API Blueprint
Provides REST endpoints for triggering syncs and managing the sync queue.
"""

from flask import Blueprint, current_app, jsonify, request

from kaos_sync.database.models import SyncMode
from kaos_sync.exceptions import InvalidTransitionError, NotFoundError
from kaos_sync.utils.helpers import parse_jira_datetime
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


def _services():
    return current_app.extensions['kaos_sync']


def _error(message: str, status: int):
    return jsonify({
        'success': False,
        'error': message
    }), status


@sync_bp.route('/<int:squad_id>', methods=['POST'])
def trigger_sync(squad_id: int):
    """
    Run a sync for one squad.

    Query params:
        mode: FULL (default), INCREMENTAL or DRY_RUN

    Returns:
        JSON with the sync result; ``queued`` is true when quota was too low
    """
    try:
        mode = SyncMode(request.args.get('mode', SyncMode.FULL.value).upper())
    except ValueError:
        return _error(f"Invalid mode: {request.args.get('mode')}", 400)

    try:
        logger.info(f"Sync triggered via API: squad={squad_id} mode={mode.value}")
        result = _services().orchestrator.sync_all(squad_id, mode)

        return jsonify({
            'success': True,
            'result': result.to_dict()
        }), 202 if result.queued else 200

    except NotFoundError as e:
        return _error(e.message, 404)
    except Exception as e:
        logger.error(f"Sync failed for squad {squad_id}: {e}")
        return _error(str(e), 500)


@sync_bp.route('/queue', methods=['POST'])
def enqueue_operation():
    """
    Queue an operation.

    Body:
        squad_id, operation_type, optional scheduled_at (ISO 8601) and payload
    """
    data = request.get_json(silent=True) or {}

    if 'squad_id' not in data or 'operation_type' not in data:
        return _error("'squad_id' and 'operation_type' are required", 400)

    scheduled_at = None
    if data.get('scheduled_at'):
        scheduled_at = parse_jira_datetime(data['scheduled_at'])
        if scheduled_at is None:
            return _error(f"Invalid scheduled_at: {data['scheduled_at']}", 400)

    try:
        operation = _services().queue.enqueue(
            int(data['squad_id']),
            str(data['operation_type']).upper(),
            scheduled_at=scheduled_at,
            payload=data.get('payload'),
            deduplicate=bool(data.get('deduplicate', False))
        )
        return jsonify({
            'success': True,
            'operation': operation.to_dict()
        }), 201

    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.error(f"Failed to enqueue operation: {e}")
        return _error(str(e), 500)


@sync_bp.route('/queue', methods=['GET'])
def list_operations():
    """
    List recent queue rows.

    Query params:
        squad_id: Filter by squad
        state: Filter by state
        limit: Max rows (default 100)
    """
    try:
        squad_id = request.args.get('squad_id', type=int)
        state = request.args.get('state')
        limit = request.args.get('limit', 100, type=int)

        operations = _services().queue.list_operations(
            squad_id=squad_id,
            state=state.upper() if state else None,
            limit=limit
        )
        return jsonify({
            'success': True,
            'operations': [op.to_dict() for op in operations]
        })

    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.error(f"Failed to list sync operations: {e}")
        return _error(str(e), 500)


@sync_bp.route('/queue/<int:operation_id>/retry', methods=['POST'])
def retry_operation(operation_id: int):
    """Send an ERROR operation back to PENDING."""
    try:
        operation = _services().queue.retry(operation_id)
        logger.info(f"Sync operation {operation_id} re-queued via API")
        return jsonify({
            'success': True,
            'operation': operation.to_dict()
        })

    except NotFoundError as e:
        return _error(e.message, 404)
    except InvalidTransitionError as e:
        return _error(e.message, 409)
    except Exception as e:
        logger.error(f"Failed to retry sync operation {operation_id}: {e}")
        return _error(str(e), 500)


@sync_bp.route('/queue/process', methods=['POST'])
def process_queue():
    """Drain the queue now instead of waiting for the next scheduled run."""
    try:
        result = _services().batch_scheduler.process_queue()
        return jsonify({
            'success': True,
            'result': result.to_dict()
        })

    except Exception as e:
        logger.error(f"Queue processing failed: {e}")
        return _error(str(e), 500)


@sync_bp.route('/quota', methods=['GET'])
def get_quota():
    """Current quota window and pending queue size."""
    try:
        services = _services()
        return jsonify({
            'success': True,
            'quota': services.rate_limiter.snapshot().to_dict(),
            'pending_operations': services.queue.count_pending()
        })

    except Exception as e:
        logger.error(f"Failed to read quota: {e}")
        return _error(str(e), 500)


@sync_bp.route('/load-method', methods=['GET'])
def get_load_method():
    return jsonify({
        'success': True,
        'load_method': _services().load_config.get_method().value
    })


@sync_bp.route('/load-method', methods=['PATCH'])
def set_load_method():
    """
    Switch the active load method.

    Body:
        load_method: API_REST or LOCAL
    """
    data = request.get_json(silent=True) or {}
    if not data.get('load_method'):
        return _error("'load_method' is required", 400)

    try:
        load_config = _services().load_config
        previous = load_config.set_method(data['load_method'])
        return jsonify({
            'success': True,
            'previous': previous.value,
            'load_method': load_config.get_method().value
        })

    except ValueError as e:
        return _error(str(e), 400)
