# backend/gunicorn_conf.py

# Gunicorn config file
# Run from backend/: gunicorn -c gunicorn_conf.py flowbot.main:app

bind = "0.0.0.0:8000"
# Live threads and their locks are held in process memory; a single worker
# keeps every message of a conversation on the same event loop.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
accesslog = "-"
errorlog = "-"
loglevel = "info"
