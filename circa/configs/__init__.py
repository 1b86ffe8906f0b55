#!/usr/bin/env python

"""
    Configurations for Circa

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import os


# Determine environment
TESTING = os.getenv("TESTING", "false").lower() == "true"

# API server configuration
SCHEME = 'http'
HOST = os.environ.get('CIRCA_HOST', 'localhost')
PORT = int(os.environ.get('CIRCA_PORT', 8080))
WORKERS = int(os.environ.get('CIRCA_WORKERS', 1))
DEBUG = bool(int(os.environ.get('CIRCA_DEBUG', 0)))
LOG_LEVEL = os.environ.get('CIRCA_LOG_LEVEL', 'info')
SSL_CRT = os.environ.get('CIRCA_SSL_CRT')
SSL_KEY = os.environ.get('CIRCA_SSL_KEY')
CIRCA_HTTP_HEADERS = {"User-Agent": "CircaNotifier/1.0"}

OPTIONS = {
    'host': HOST,
    'port': PORT,
    'log_level': LOG_LEVEL,
    'reload': DEBUG,
    'workers': WORKERS,
}
if SSL_CRT and SSL_KEY:
    OPTIONS['ssl_keyfile'] = SSL_KEY
    OPTIONS['ssl_certfile'] = SSL_CRT
    SCHEME = 'https'

DB_CONFIG = {
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASSWORD'),
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', '5432')),
    'dbname': os.environ.get('DB_NAME', 'circa'),
}

# Database configuration
DB_URI = os.environ.get('CIRCA_DB_URI') or (
    "sqlite:///:memory:" if TESTING else
    'postgresql+psycopg2://{user}:{password}@{host}:{port}/{dbname}'.format(**DB_CONFIG)
)
# Seconds a SQLite writer waits for the file lock
SQLITE_BUSY_TIMEOUT = float(os.environ.get('CIRCA_SQLITE_BUSY_TIMEOUT', 30))

# Notification service; an empty url means notices are only logged
NOTIFY_URL = os.environ.get('CIRCA_NOTIFY_URL', '')
NOTIFY_TIMEOUT = float(os.environ.get('CIRCA_NOTIFY_TIMEOUT', 10))

# Background sweeps
SCHEDULER_ENABLED = os.environ.get('CIRCA_SCHEDULER', 'false' if TESTING else 'true').lower() == 'true'
SCHEDULER_POLL_SECONDS = float(os.environ.get('CIRCA_SCHEDULER_POLL', 30))
OVERDUE_SWEEP_AT = os.environ.get('CIRCA_OVERDUE_SWEEP_AT', '09:00')
REMINDER_SWEEP_AT = os.environ.get('CIRCA_REMINDER_SWEEP_AT', '08:00')

# Circulation policy defaults, overridable per deployment in the settings table
POLICY_DEFAULTS = {
    'grace_period_days': int(os.environ.get('CIRCA_GRACE_PERIOD_DAYS', 2)),
    'daily_fine_rate': os.environ.get('CIRCA_DAILY_FINE_RATE', '1.00'),
    'max_concurrent_items': int(os.environ.get('CIRCA_MAX_CONCURRENT_ITEMS', 5)),
    'max_concurrent_queues': int(os.environ.get('CIRCA_MAX_CONCURRENT_QUEUES', 3)),
    'max_period_extensions': int(os.environ.get('CIRCA_MAX_PERIOD_EXTENSIONS', 2)),
    'extension_period_days': int(os.environ.get('CIRCA_EXTENSION_PERIOD_DAYS', 7)),
    'damaged_item_base_fine': os.environ.get('CIRCA_DAMAGED_ITEM_BASE_FINE', '10.00'),
    'lost_item_base_fine': os.environ.get('CIRCA_LOST_ITEM_BASE_FINE', '15.00'),
    'fine_block_threshold': os.environ.get('CIRCA_FINE_BLOCK_THRESHOLD') or None,
    'reminder_lookahead_days': int(os.environ.get('CIRCA_REMINDER_LOOKAHEAD_DAYS', 2)),
    'default_return_period': int(os.environ.get('CIRCA_DEFAULT_RETURN_PERIOD', 14)),
    'auto_allocate': os.environ.get('CIRCA_AUTO_ALLOCATE', 'true').lower() == 'true',
}

__all__ = [
    'SCHEME', 'HOST', 'PORT', 'DEBUG', 'OPTIONS', 'DB_URI', 'DB_CONFIG', 'TESTING',
    'SQLITE_BUSY_TIMEOUT',
    'NOTIFY_URL', 'NOTIFY_TIMEOUT', 'SCHEDULER_ENABLED', 'SCHEDULER_POLL_SECONDS',
    'OVERDUE_SWEEP_AT', 'REMINDER_SWEEP_AT', 'POLICY_DEFAULTS',
]
