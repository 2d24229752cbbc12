import os
import sys
import pytest

# Ensure the backend root (containing the `slicetally` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from slicetally import create_app, socketio
from slicetally.services.groups import GroupStore


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    CORS_ORIGINS = ['http://localhost:5173']
    DATA_FILE = ''
    PERSIST_DEBOUNCE_MS = 20
    CODE_LENGTH = 6
    NAME_MAX_LENGTH = 30
    AUDIT_LOG_LIMIT = 1000
    DEFAULT_FOOD_TYPE = 'pizza'
    REMOVE_ON_DISCONNECT = False
    SUBSCRIBER_QUEUE_SIZE = 32
    SSE_KEEPALIVE_SEC = 0.2


def make_config(**overrides):
    return type('OverrideConfig', (TestConfig,), overrides)


@pytest.fixture()
def data_file(tmp_path):
    return str(tmp_path / 'data.json')


@pytest.fixture()
def app_factory(data_file):
    """Build an app on the per-test data file with config overrides."""
    def factory(**overrides):
        overrides.setdefault('DATA_FILE', data_file)
        return create_app(make_config(**overrides))
    return factory


@pytest.fixture()
def flask_app(app_factory):
    application = app_factory()
    with application.app_context():
        yield application
        application.extensions['slicetally'].registry.close_all()


@pytest.fixture()
def services(flask_app):
    return flask_app.extensions['slicetally']


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def store():
    return GroupStore()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
