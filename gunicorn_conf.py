"""
Gunicorn Configuration for the exchange engine API
Production worker management with uvicorn workers

    gunicorn -c gunicorn_conf.py api_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after 10k requests to prevent memory leaks
max_requests_jitter = 1000
timeout = 120  # Above the ledger call deadline so releases are never cut off mid-call
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "agent_cash_engine"

# Each worker owns its own event loop, engine and scheduler
preload_app = False


def when_ready(server):
    """Called just after the server is started."""
    print(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    print(f"🔧 Worker {worker.pid} started")


def worker_abort(worker):
    """Called when a worker receives the SIGABRT signal."""
    print(f"❌ Worker {worker.pid} aborted")
