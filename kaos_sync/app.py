"""
Flask Application Factory
Main entry point for the KAOS Jira sync web application.
"""

import os

from flask import Flask, jsonify
from flask_cors import CORS

from kaos_sync import __version__
from kaos_sync.services import Services, build_services
from kaos_sync.utils.helpers import utcnow
from kaos_sync.utils.logger import setup_logging, get_logger


def create_app(services: Services = None, configure_logging: bool = True) -> Flask:
    """
    Application factory for Flask app.

    Args:
        services: Pre-built component graph; built from configuration when omitted
        configure_logging: Install the application log handlers

    Returns:
        Configured Flask application
    """
    if configure_logging:
        setup_logging()
    logger = get_logger(__name__)

    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.json.sort_keys = False

    CORS(app)

    app.extensions['kaos_sync'] = services or build_services()

    from kaos_sync.api.sync_routes import sync_bp
    from kaos_sync.api.alert_routes import alerts_bp

    app.register_blueprint(sync_bp)
    app.register_blueprint(alerts_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = app.extensions['kaos_sync'].db.check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': utcnow().isoformat(),
            'database': 'connected' if db_healthy else 'disconnected'
        })

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'KAOS Jira Sync API',
            'version': __version__,
            'endpoints': {
                '/health': 'Health check',
                '/api/sync/<squad_id>': 'Run squad sync (POST, ?mode=FULL|INCREMENTAL|DRY_RUN)',
                '/api/sync/queue': 'List (GET) or enqueue (POST) sync operations',
                '/api/sync/queue/<id>/retry': 'Re-queue a failed operation (POST)',
                '/api/sync/queue/process': 'Process the queue now (POST)',
                '/api/sync/quota': 'Quota window status (GET)',
                '/api/sync/load-method': 'Read (GET) or switch (PATCH) load method',
                '/api/alerts': 'Sprint alerts (GET, ?sprint_id=)',
                '/api/alerts/squad/<squad_id>': 'Squad alerts (GET)',
                '/api/alerts/<id>/resolve': 'Resolve alert (PATCH)',
                '/api/alerts/evaluate/<sprint_id>': 'Evaluate rules (POST, ?squad_id=)',
                '/api/alerts/rules': 'List (GET) or create (POST) rules',
                '/api/alerts/rules/<id>': 'Update (PUT) or delete (DELETE) rule'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


if __name__ == '__main__':
    # Development server
    application = create_app()
    batch_scheduler = application.extensions['kaos_sync'].batch_scheduler
    batch_scheduler.start()

    try:
        application.run(
            host='0.0.0.0',
            port=int(os.getenv('FLASK_PORT', 6922)),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    except (KeyboardInterrupt, SystemExit):
        batch_scheduler.shutdown()
