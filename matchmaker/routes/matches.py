from flask import Blueprint, request, jsonify, current_app, g

from matchmaker.auth import require_client
from matchmaker.errors import ValidationError

bp = Blueprint('matches', __name__, url_prefix='/api/v1/matches')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@bp.route('/', methods=['GET'])
@require_client
def list_matches():
    active_only = request.args.get('all', 'false').lower() not in ('1', 'true', 'yes')
    matches = current_app.matches.list_matches(g.client, active_only=active_only)
    return jsonify({'matches': [m.to_dict() for m in matches]})


@bp.route('/', methods=['POST'])
@require_client
def create_match():
    match = current_app.matches.create_request(g.client, _json_body())
    return jsonify(match.to_dict()), 201


@bp.route('/<match_id>', methods=['GET'])
@require_client
def get_match(match_id):
    return jsonify(current_app.matches.get(g.client, match_id).to_dict())


@bp.route('/<match_id>', methods=['DELETE'])
@require_client
def close_match(match_id):
    return jsonify(current_app.matches.close(g.client, match_id).to_dict())


@bp.route('/<match_id>/join', methods=['POST'])
@require_client
def join_match(match_id):
    match = current_app.matches.player_join(g.client, match_id, _json_body())
    return jsonify(match.to_dict())


@bp.route('/<match_id>/whitelist', methods=['POST'])
@require_client
def whitelist_player(match_id):
    match = current_app.matches.whitelist_player(g.client, match_id, _json_body())
    return jsonify(match.to_dict())


@bp.route('/<match_id>/whitelist/<steam>', methods=['DELETE'])
@require_client
def unwhitelist_player(match_id, steam):
    return jsonify(current_app.matches.unwhitelist_player(g.client, match_id, steam).to_dict())


@bp.route('/<match_id>/events', methods=['GET'])
@require_client
def match_events(match_id):
    match = current_app.matches.get(g.client, match_id)
    pubsub = current_app.notifier.pubsub
    if not pubsub:
        return jsonify({'events': []})
    limit = request.args.get('limit', 50, type=int)
    events = pubsub.get_recent_events('match', match.match_id, limit)
    return jsonify({'events': [e.to_dict() for e in events]})


@bp.route('/server/callback', methods=['POST'])
def server_callback():
    """Status updates pushed by the fleet manager for servers it runs."""
    data = _json_body()
    server = data.get('server') or data
    status = request.args.get('status') or data.get('status') or server.get('status')
    if not status:
        raise ValidationError("status is required")

    match = current_app.matches.handle_server_status(server, status)
    return jsonify({'match_id': match.match_id, 'status': match.status})
