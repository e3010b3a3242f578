"""Gunicorn production configuration."""
import multiprocessing
import os

bind = os.getenv("BIND", "0.0.0.0:8000")
# The in-memory store lives inside one process; only the database backend can fan out.
if os.getenv("STORAGE_BACKEND", "memory") == "database":
    workers = multiprocessing.cpu_count() * 2 + 1
else:
    workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
# LLM review runs serially with a 60s budget per row
timeout = 600
keepalive = 5
max_requests = 1000
max_requests_jitter = 100
preload_app = False
accesslog = "-"
errorlog = "-"
loglevel = "info"
