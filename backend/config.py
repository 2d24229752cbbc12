import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_flag(name, default='false'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    # Reject request bodies larger than 1 MB
    MAX_CONTENT_LENGTH = 1024 * 1024
    # Browser origins allowed to call the API and open sockets
    CORS_ORIGINS = [
        o.strip() for o in os.environ.get(
            'CORS_ORIGINS',
            'http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000',
        ).split(',') if o.strip()
    ]
    # Snapshot file; empty string keeps state in memory only
    DATA_FILE = os.environ.get('DATA_FILE', os.path.join(BASE_DIR, 'data.json'))
    # Coalescing window for snapshot writes (ms)
    PERSIST_DEBOUNCE_MS = int(os.environ.get('PERSIST_DEBOUNCE_MS', '250'))
    CODE_LENGTH = int(os.environ.get('CODE_LENGTH', '6'))
    NAME_MAX_LENGTH = int(os.environ.get('NAME_MAX_LENGTH', '30'))
    AUDIT_LOG_LIMIT = int(os.environ.get('AUDIT_LOG_LIMIT', '1000'))
    DEFAULT_FOOD_TYPE = os.environ.get('DEFAULT_FOOD_TYPE', 'pizza')
    # Presence policy: drop a participant when their last live stream closes
    REMOVE_ON_DISCONNECT = _env_flag('REMOVE_ON_DISCONNECT')
    # Pending projections buffered per SSE subscriber
    SUBSCRIBER_QUEUE_SIZE = int(os.environ.get('SUBSCRIBER_QUEUE_SIZE', '32'))
    # Keep-alive comment interval for SSE streams (sec)
    SSE_KEEPALIVE_SEC = float(os.environ.get('SSE_KEEPALIVE_SEC', '15'))
