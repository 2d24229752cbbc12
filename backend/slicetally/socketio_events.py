from flask import request
from flask_socketio import emit
from slicetally import socketio, get_services
from slicetally.errors import GroupError, InvalidInput
from slicetally.models import normalize_code
from slicetally.services.groups import SocketIOChannel, Subscription
from typing import Dict
import threading

NAMESPACE = '/ws'

# sid -> group code -> live subscription
_sid_subs: Dict[str, Dict[str, Subscription]] = {}
_sid_lock = threading.Lock()


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _error(exc: GroupError) -> None:
    emit('error', {'message': exc.message, 'status': exc.status_code})


def _require(data, key):
    if not isinstance(data, dict):
        raise InvalidInput('payload must be an object')
    value = data.get(key)
    if value is None or not str(value).strip():
        raise InvalidInput(f"{key} is required")
    return str(value).strip()


def _drop(sid: str, code: str) -> bool:
    with _sid_lock:
        sub = _sid_subs.get(sid, {}).pop(code, None)
    if sub is None:
        return False
    get_services().release(sub)
    return True


def handle_connect(auth=None):
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(reason=None):
    with _sid_lock:
        subs = _sid_subs.pop(_get_sid(), {})
    services = get_services()
    for sub in subs.values():
        services.release(sub)


def handle_subscribe(data):
    try:
        code = normalize_code(_require(data, 'code'))
        participant_id = data.get('participant_id')
        participant_id = str(participant_id).strip() if participant_id else None
        name = data.get('name')
        services = get_services()
        sid = _get_sid()
        sub = services.attach(
            code,
            SocketIOChannel(socketio, sid, namespace=NAMESPACE),
            participant_id=participant_id,
            name=name,
        )
        participant_id = sub.participant_id
        # One subscription per group per socket; register the new one before
        # releasing the old so the presence policy never sees a gap
        with _sid_lock:
            previous = _sid_subs.setdefault(sid, {}).get(code)
            _sid_subs[sid][code] = sub
    except GroupError as exc:
        _error(exc)
        return
    if previous is not None:
        services.release(previous)
    emit('subscribed', {'code': code, 'participant_id': participant_id})


def handle_unsubscribe(data):
    try:
        code = normalize_code(_require(data, 'code'))
    except GroupError as exc:
        _error(exc)
        return
    removed = _drop(_get_sid(), code)
    emit('unsubscribed', {'code': code, 'removed': removed})


def handle_adjust_slices(data):
    try:
        code = _require(data, 'code')
        participant_id = _require(data, 'participant_id')
        delta = data.get('delta')
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidInput('integer delta is required')
        participant = get_services().store.adjust_slices(code, participant_id, delta)
    except GroupError as exc:
        _error(exc)
        return
    emit('adjusted', {'ok': True, 'participant': participant.to_summary()})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('subscribe', handle_subscribe, namespace=NAMESPACE)
    socketio.on_event('unsubscribe', handle_unsubscribe, namespace=NAMESPACE)
    socketio.on_event('adjust_slices', handle_adjust_slices, namespace=NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=NAMESPACE)
