"""
RewardFlow
Order-driven campaign and referral rewards engine.
Flask application factory
"""
import os
import re
import logging

from flask import Flask, jsonify
from flask_cors import CORS

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging
from .utils.errors import error_response, ErrorCode
from .utils.exceptions import RewardFlowError, ReferralError

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)
        config_overrides: Extra settings applied on top of the config class

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    db.init_app(app)
    migrate.init_app(app, db)

    # Storefront endpoints are called from the shop's own domain
    cors_origins = [
        'https://admin.shopify.com',
        re.compile(r'https://.*\.myshopify\.com'),
    ]
    if config_name != 'production':
        cors_origins.append(re.compile(r'http://(localhost|127\.0\.0\.1):\d+'))
    CORS(app, resources={r'/api/*': {'origins': cors_origins}},
         allow_headers=['Content-Type', 'Authorization', 'X-Shop-Domain'])

    register_blueprints(app)

    from .commands import init_app as init_commands
    init_commands(app)

    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    register_error_handlers(app)

    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'rewardflow'}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API and webhook blueprints."""
    from .api import referrals_bp, loyalty_bp, campaigns_bp
    from .webhooks import order_lifecycle_bp

    # Storefront + admin API
    app.register_blueprint(referrals_bp, url_prefix='/api/referrals')
    app.register_blueprint(loyalty_bp, url_prefix='/api/loyalty')
    app.register_blueprint(campaigns_bp, url_prefix='/api/campaigns')

    # Shopify webhooks
    app.register_blueprint(order_lifecycle_bp, url_prefix='/webhook')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""

    @app.errorhandler(ReferralError)
    def referral_error(error):
        return jsonify({'error': error.code, 'message': error.message}), error.status_code

    @app.errorhandler(RewardFlowError)
    def rewardflow_error(error):
        return error_response(error.message, error.code, error.status_code)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response('Method not allowed', ErrorCode.INVALID_REQUEST, 405, log_error=False)

    @app.errorhandler(500)
    def internal_error(error):
        return error_response('Internal server error', ErrorCode.INTERNAL_ERROR, 500)
