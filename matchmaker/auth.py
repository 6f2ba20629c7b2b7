from functools import wraps

from flask import request, g, jsonify

from .repositories import ClientRepository


def _parse_token(header: str):
    scheme, _, token = (header or '').partition(' ')
    if scheme.lower() != 'bearer' or ':' not in token:
        return None, None
    client_id, _, secret = token.partition(':')
    return client_id, secret


def require_client(fn):
    """Authenticate the calling client from ``Authorization: Bearer <client_id>:<secret>``."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        client_id, secret = _parse_token(request.headers.get('Authorization'))
        client = ClientRepository().get(client_id) if client_id else None

        if not client or not client.check_secret(secret):
            return jsonify({'error': 'Invalid client credentials', 'code': 'unauthorized'}), 401

        g.client = client
        return fn(*args, **kwargs)
    return wrapper
