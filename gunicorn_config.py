import os

bind = f"0.0.0.0:{int(os.environ.get('PORT', 5001))}"

# Sync workers: push delivery is a blocking HTTP call per subscription
workers = int(os.environ.get('WEB_CONCURRENCY', 2))
worker_class = 'sync'
# A notification to a whole school can fan out to many push services
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 120))

loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
accesslog = '-'
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(L)ss "%(a)s"'
errorlog = '-'
capture_output = True

# Recycle workers so the in-memory login lockout state cannot grow unbounded
max_requests = int(os.environ.get('GUNICORN_MAX_REQUESTS', 1000))
max_requests_jitter = 50

reload = os.environ.get('FLASK_ENV') == 'development'
