"""
Gunicorn configuration for RewardFlow.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Webhooks for different orders run in parallel across workers and threads;
# same-order events are serialized in-process by the ingestion layer
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
threads = int(os.getenv('GUNICORN_THREADS', '4'))
worker_class = 'gthread'
timeout = 60
keepalive = 5

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'rewardflow'

# Preload so the scheduler starts once in the master process
preload_app = True

graceful_timeout = 30


def on_starting(server):
    server.log.info("Starting RewardFlow server...")


def on_exit(server):
    server.log.info("RewardFlow server shutting down...")
