from flask import Blueprint, request, jsonify, current_app, g

from matchmaker.auth import require_client
from matchmaker.errors import ValidationError

bp = Blueprint('lobbies', __name__, url_prefix='/api/v1/lobbies')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _wants_all() -> bool:
    return request.args.get('all', 'false').lower() in ('1', 'true', 'yes')


@bp.route('/', methods=['GET'])
@require_client
def list_lobbies():
    lobbies = current_app.lobbies.list_lobbies(g.client, active_only=not _wants_all())
    return jsonify({'lobbies': [l.to_dict() for l in lobbies]})


@bp.route('/', methods=['POST'])
@require_client
def create_lobby():
    lobby = current_app.lobbies.create_request(g.client, _json_body())
    return jsonify(lobby.to_dict()), 201


@bp.route('/<lobby_id>', methods=['GET'])
@require_client
def get_lobby(lobby_id):
    return jsonify(current_app.lobbies.get(g.client, lobby_id).to_dict())


@bp.route('/<lobby_id>', methods=['DELETE'])
@require_client
def close_lobby(lobby_id):
    return jsonify(current_app.lobbies.close(g.client, lobby_id).to_dict())


@bp.route('/match/<match_id>', methods=['GET'])
@require_client
def get_lobby_by_match(match_id):
    return jsonify(current_app.lobbies.get_by_match(g.client, match_id).to_dict())


@bp.route('/<lobby_id>/join', methods=['POST'])
@require_client
def join_lobby(lobby_id):
    lobby = current_app.lobbies.add_player(g.client, lobby_id, _json_body())
    return jsonify(lobby.to_dict())


@bp.route('/<lobby_id>/pick', methods=['POST'])
@require_client
def pick_player(lobby_id):
    data = _json_body()
    for field in ('captain', 'player', 'role'):
        if not data.get(field):
            raise ValidationError(f"{field} is required")

    lobby = current_app.lobbies.perform_pick(
        g.client, lobby_id, data['captain'], data['player'], data['role'],
        id_type=data.get('type', 'discord')
    )
    return jsonify(lobby.to_dict())


@bp.route('/<lobby_id>/players/<id_type>/<pid>', methods=['GET'])
@require_client
def get_player(lobby_id, id_type, pid):
    return jsonify(current_app.lobbies.get_player(g.client, lobby_id, pid, id_type))


@bp.route('/<lobby_id>/players/<id_type>/<pid>', methods=['DELETE'])
@require_client
def remove_player(lobby_id, id_type, pid):
    return jsonify(current_app.lobbies.remove_player(g.client, lobby_id, pid, id_type).to_dict())


@bp.route('/<lobby_id>/players/<id_type>/<pid>/roles/<role>', methods=['POST'])
@require_client
def add_player_role(lobby_id, id_type, pid, role):
    lobby = current_app.lobbies.add_player_role(g.client, lobby_id, pid, role, id_type)
    return jsonify(lobby.to_dict())


@bp.route('/<lobby_id>/players/<id_type>/<pid>/roles/<role>', methods=['DELETE'])
@require_client
def remove_player_role(lobby_id, id_type, pid, role):
    lobby = current_app.lobbies.remove_player_role(g.client, lobby_id, pid, role, id_type)
    return jsonify(lobby.to_dict())


@bp.route('/<lobby_id>/players/<id_type>/<pid>/afk', methods=['PUT'])
@require_client
def set_player_afk(lobby_id, id_type, pid):
    afk = bool(_json_body().get('afk', False))
    lobby = current_app.lobbies.set_player_afk(g.client, lobby_id, pid, afk, id_type)
    return jsonify(lobby.to_dict())


@bp.route('/<lobby_id>/events', methods=['GET'])
@require_client
def lobby_events(lobby_id):
    """Recent status events of a lobby, when Redis fan-out is enabled."""
    lobby = current_app.lobbies.get(g.client, lobby_id)
    pubsub = current_app.notifier.pubsub
    if not pubsub:
        return jsonify({'events': []})
    limit = request.args.get('limit', 50, type=int)
    events = pubsub.get_recent_events('lobby', lobby.lobby_id, limit)
    return jsonify({'events': [e.to_dict() for e in events]})
