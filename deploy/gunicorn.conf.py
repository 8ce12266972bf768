"""
Gunicorn configuration for the Exam Platform API.

Login lockouts, the token blocklist, monitoring state and websocket
registries live in process memory, so the default is a single worker.
Raise WEB_CONCURRENCY only behind sticky routing.
"""
import os

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "120"))
graceful_timeout = 30
keepalive = 5

# Logging (stdout/stderr, collected by the container runtime)
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)sus'

# Process naming
proc_name = "exam-backend"

daemon = False

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"Exam Platform API ready with {workers} worker(s) on {bind}")


def worker_exit(server, worker):
    server.log.info(f"Worker {worker.pid} exited")
