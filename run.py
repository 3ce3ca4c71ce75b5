"""
RewardFlow entry point.
"""
import os
import sys
import logging

from rewardflow.utils.logging_config import setup_logging

setup_logging()
logger = logging.getLogger('rewardflow.run')

# Default to production for deployment
config_name = os.getenv('FLASK_ENV', 'production')
logger.info(f"Starting RewardFlow (config: {config_name}, PORT: {os.getenv('PORT', 'not set')}, "
            f"DATABASE_URL: {'set' if os.getenv('DATABASE_URL') else 'NOT SET'})")

try:
    from rewardflow import create_app
    app = create_app(config_name)
    logger.info(f"App created, {len(list(app.url_map.iter_rules()))} routes")
except RuntimeError as e:
    logger.exception(f"FATAL ERROR during app creation: {e}")
    sys.exit(1)

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=os.getenv('FLASK_ENV') == 'development'
    )
