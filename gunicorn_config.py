"""
Gunicorn settings for the storefront API.

Rate-limit counters live in process memory, so the server runs one worker
process and scales with threads instead.
"""
import os

bind = "0.0.0.0:{}".format(os.environ.get("PORT", "8080"))
workers = 1
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "60"))
graceful_timeout = 30
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
errorlog = "-"
wsgi_app = "passenger_wsgi:application"
