from flask import Blueprint, current_app, jsonify, request

bp = Blueprint('servers', __name__, url_prefix='/api/v1')


def get_registry():
    return current_app.registry


# ==================== Servers ====================

@bp.route('/servers', methods=['GET'])
def list_servers():
    """List servers, optionally filtered by status."""
    status = request.args.get('status')
    servers = get_registry().list_servers(status=status)
    return jsonify({
        'servers': [s.to_dict() for s in servers],
        'count': len(servers),
    })


@bp.route('/servers', methods=['POST'])
def create_server():
    """Create a server and queue its first start."""
    data = request.json or {}

    name = data.get('name')
    if not name:
        return jsonify({'error': 'Server name is required'}), 400

    server, job_id = get_registry().create_server(
        name=name,
        version=data.get('version', 'LATEST'),
        motd=data.get('motd', 'A simple server'),
        difficulty=data.get('difficulty', 'easy'),
        max_players=data.get('max_players', 20),
        level_name=data.get('level_name', 'world'),
    )

    return jsonify({
        'message': 'Server created',
        'server': server.to_dict(),
        'job_id': job_id,
    }), 201


@bp.route('/servers/<server_id>', methods=['GET'])
def get_server(server_id: str):
    return jsonify(get_registry().get_server(server_id).to_dict())


@bp.route('/servers/<server_id>', methods=['PUT'])
def reconfigure_server(server_id: str):
    """Recreate the server container with new properties."""
    data = request.json or {}
    server = get_registry().reconfigure_server(server_id, **data)
    return jsonify({
        'message': 'Server reconfigured',
        'server': server.to_dict(),
    })


@bp.route('/servers/<server_id>', methods=['DELETE'])
def delete_server(server_id: str):
    server = get_registry().delete_server(server_id)
    return jsonify({
        'message': 'Server deleted',
        'server': server.to_dict(),
    })


# ==================== Lifecycle ====================

@bp.route('/servers/<server_id>/start', methods=['PUT'])
def start_server(server_id: str):
    job_id = get_registry().start_server(server_id)
    return jsonify({'message': 'Server start queued', 'job_id': job_id}), 202


@bp.route('/servers/<server_id>/stop', methods=['PUT'])
def stop_server(server_id: str):
    server = get_registry().stop_server(server_id)
    return jsonify({'message': 'Server stopped', 'server': server.to_dict()})


@bp.route('/servers/<server_id>/restart', methods=['PUT'])
def restart_server(server_id: str):
    job_id = get_registry().restart_server(server_id)
    return jsonify({'message': 'Server restart queued', 'job_id': job_id}), 202


@bp.route('/jobs/<job_id>', methods=['GET'])
def get_job_status(job_id: str):
    """Poll a start job: pending, in-progress, completed or failed."""
    return jsonify(get_registry().get_job_status(job_id).to_dict())


# ==================== Runtime ====================

@bp.route('/servers/<server_id>/status', methods=['GET'])
def get_runtime_status(server_id: str):
    """Live container state as reported by the runtime."""
    return jsonify(get_registry().get_runtime_status(server_id))


@bp.route('/servers/<server_id>/logs', methods=['GET'])
def get_logs(server_id: str):
    lines = request.args.get('lines', 100, type=int)
    logs = get_registry().get_logs(server_id, lines=lines)
    return jsonify({'server_id': server_id, 'lines': logs})


@bp.route('/servers/<server_id>/operators', methods=['POST'])
def add_operator(server_id: str):
    data = request.json or {}
    username = data.get('username')
    if not username:
        return jsonify({'error': 'Username is required'}), 400

    output = get_registry().add_operator(server_id, username)
    return jsonify({'message': f'{username} is now an operator', 'output': output}), 201


@bp.route('/servers/<server_id>/operators/<username>', methods=['DELETE'])
def remove_operator(server_id: str, username: str):
    output = get_registry().remove_operator(server_id, username)
    return jsonify({'message': f'{username} is no longer an operator', 'output': output})


@bp.route('/servers/<server_id>/save', methods=['POST'])
def save_world(server_id: str):
    output = get_registry().save_world(server_id)
    return jsonify({'message': 'World saved', 'output': output})
