from flask import Flask, current_app
from flask_cors import CORS
from flask_socketio import SocketIO
import atexit
import click
import json
from config import Config

socketio = SocketIO(async_mode=None)


def get_services():
    """The GroupServices instance owned by the current app."""
    return current_app.extensions['slicetally']


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    origins = flask_app.config.get('CORS_ORIGINS') or []
    CORS(flask_app, supports_credentials=True, origins=origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=origins)

    from slicetally.services.groups import build_services
    services = build_services(
        flask_app.config,
        logger=flask_app.logger,
        start_task=socketio.start_background_task,
    )
    flask_app.extensions['slicetally'] = services
    if not flask_app.config.get('TESTING'):
        # Last write on interpreter exit so a pending debounce is not lost
        atexit.register(services.shutdown)

    from slicetally.main import main
    flask_app.register_blueprint(main)

    from slicetally.api.groups import groups
    flask_app.register_blueprint(groups, url_prefix='/api/groups')

    from slicetally.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    @click.command('groups-reset')
    def groups_reset_command():
        """Drops every group and writes an empty snapshot."""
        services.store.restore(None)
        if services.persistence.flush():
            print('All groups dropped, snapshot reset.')
        else:
            print('No snapshot file configured; in-memory state cleared.')

    @click.command('groups-list')
    @click.option('--json', 'as_json', is_flag=True, help='Print the full state document.')
    def groups_list_command(as_json):
        """Lists group codes with participant counts."""
        document = services.store.to_dict()
        if as_json:
            print(json.dumps(document, indent=2))
            return
        for code, group in sorted(document['groups'].items()):
            print(f"{code}  {group['food_type']:<10} participants={len(group['participants'])}")

    flask_app.cli.add_command(groups_reset_command)
    flask_app.cli.add_command(groups_list_command)

    return flask_app
