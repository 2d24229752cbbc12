from flask import Blueprint, Response, current_app, jsonify, request
import json

from slicetally import get_services
from slicetally.errors import GroupError, InvalidInput
from slicetally.services.groups import ChannelClosed, QueueChannel


groups = Blueprint('groups', __name__)


@groups.errorhandler(GroupError)
def handle_group_error(error):
    current_app.logger.warning(f"[{type(error).__name__}] {request.method} {request.path}: {error.message}")
    return jsonify({'error': error.message}), error.status_code


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            raise InvalidInput('Invalid JSON')
        return {}
    if not isinstance(data, dict):
        raise InvalidInput('JSON object expected')
    return data


def _text(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise InvalidInput(f"{key} must be a string")
    return str(value).strip() or None


@groups.route('/create', methods=['POST'])
def create_group():
    data = _json_body()
    store = get_services().store
    code = store.create_group(
        name=_text(data, 'name'),
        participant_id=_text(data, 'participant_id'),
        food_type=data.get('food_type'),
    )
    projection = store.projection(code)
    return jsonify({'code': code, 'food_type': projection['meta']['food_type']}), 201


@groups.route('/join', methods=['POST'])
def join_group():
    data = _json_body()
    code = _text(data, 'code')
    name = _text(data, 'name')
    if not all([code, name]):
        raise InvalidInput('code and name are required')
    store = get_services().store
    participant = store.join_group(code, name, _text(data, 'participant_id'))
    projection = store.projection(code)
    return jsonify({
        'code': projection['code'],
        'food_type': projection['meta']['food_type'],
        'participant_id': participant.id,
        'participant': participant.to_summary(),
        'participants': projection['participants'],
    })


@groups.route('/<string:code>/slices', methods=['POST'])
def adjust_slices(code):
    data = _json_body()
    participant_id = _text(data, 'participant_id')
    delta = data.get('delta')
    if not participant_id or isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidInput('participant_id and integer delta are required')
    participant = get_services().store.adjust_slices(code, participant_id, delta)
    return jsonify({'ok': True, 'participant': participant.to_summary()})


@groups.route('/<string:code>/leave', methods=['POST'])
def leave_group(code):
    # Never fails: an unreadable body or id simply removes nobody
    data = request.get_json(silent=True)
    participant_id = data.get('participant_id') if isinstance(data, dict) else None
    if not isinstance(participant_id, (str, int)) or isinstance(participant_id, bool):
        participant_id = None
    participant_id = str(participant_id).strip() if participant_id is not None else ''
    removed = bool(participant_id) and get_services().store.remove_participant(code, participant_id)
    return jsonify({'ok': True, 'removed': removed})


@groups.route('/<string:code>', methods=['GET'])
def group_info(code):
    store = get_services().store
    projection = store.projection(code)
    if request.args.get('sort') == 'name':
        # Alphabetical listing for the "pick yourself to rejoin" screen
        projection['participants'] = store.list_participants_by_name(code)
    return jsonify({
        'code': projection['code'],
        'participants': projection['participants'],
        'meta': projection['meta'],
    })


@groups.route('/<string:code>/events', methods=['GET'])
def group_events(code):
    participant_id = (request.args.get('participant_id') or '').strip()
    name = request.args.get('name')
    if not participant_id:
        raise InvalidInput('participant_id is required')
    services = get_services()

    cfg = current_app.config
    keepalive = float(cfg.get('SSE_KEEPALIVE_SEC', 15))
    channel = QueueChannel(maxsize=int(cfg.get('SUBSCRIBER_QUEUE_SIZE', 32)))
    sub = services.attach(code, channel, participant_id=participant_id, name=name)

    def stream():
        try:
            while True:
                projection = channel.get(timeout=keepalive)
                if projection is None:
                    yield ': keep-alive\n\n'
                    continue
                yield f"data: {json.dumps(projection)}\n\n"
        except ChannelClosed:
            return

    response = Response(stream(), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    # Runs on client disconnect even if the generator never started
    response.call_on_close(lambda: services.release(sub))
    return response
