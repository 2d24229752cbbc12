from flask import Blueprint, jsonify
from slicetally import get_services

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the slicetally server!'})


@main.route('/health')
def health():
    services = get_services()
    return jsonify({
        'status': 'ok',
        'groups': len(services.store),
        'subscribers': services.registry.subscriber_count(),
        'snapshot_writes': services.persistence.writes,
        'snapshot_failures': services.persistence.failures,
    })
