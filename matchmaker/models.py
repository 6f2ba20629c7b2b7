from datetime import datetime, timedelta
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

from shared.state_machine import (
    LobbyStatus, MatchStatus, LOBBY_TERMINAL_STATUSES, MATCH_TERMINAL_STATUSES
)

db = SQLAlchemy()


def _parse_datetime(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.rstrip('Z'))


class Client(db.Model):
    """An integration (bot) allowed to create lobbies and matches."""
    __tablename__ = 'clients'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    secret_hash = db.Column(db.String(256), nullable=False)
    # {"games": [...], "limit": n, "regions": {"eu": {"limit": n}}}
    access = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def set_secret(self, secret: str):
        self.secret_hash = generate_password_hash(secret)

    def check_secret(self, secret: str) -> bool:
        if not self.secret_hash:
            return False
        return check_password_hash(self.secret_hash, secret)

    def has_game_access(self, game: str) -> bool:
        return game in (self.access or {}).get('games', [])

    def has_region_access(self, region: str) -> bool:
        return region in (self.access or {}).get('regions', {})

    def get_region_limit(self, region: str):
        return (self.access or {}).get('regions', {}).get(region, {}).get('limit')

    def get_limit(self) -> int:
        return (self.access or {}).get('limit', 0)

    def to_dict(self):
        return {
            'client_id': self.client_id,
            'name': self.name,
            'access': self.access,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Lobby(db.Model):
    __tablename__ = 'lobbies'

    id = db.Column(db.Integer, primary_key=True)
    lobby_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    client_id = db.Column(db.String(50), nullable=False, index=True)
    match_id = db.Column(db.String(50), nullable=False, index=True)
    created_by = db.Column(db.String(100), nullable=True, index=True)
    status = db.Column(db.String(40), nullable=False, default=LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS.value)
    distribution = db.Column(db.String(40), nullable=False)
    max_players = db.Column(db.Integer, nullable=False, default=12)
    callback_url = db.Column(db.String(500), nullable=True)

    requirements = db.Column(db.JSON, nullable=False, default=list)
    queued_players = db.Column(db.JSON, nullable=False, default=list)
    historical_joiners = db.Column(db.JSON, nullable=False, default=list)
    # expiry_time, extra_expiry_time, afk_check, captain_pick_timeout, pick_timer_armed
    data = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in [s.value for s in LOBBY_TERMINAL_STATUSES]

    @property
    def expires_at(self) -> datetime:
        data = self.data or {}
        seconds = data.get('expiry_time', 0) + data.get('extra_expiry_time', 0)
        return self.created_at + timedelta(seconds=seconds)

    def to_dict(self):
        return {
            'lobby_id': self.lobby_id,
            'client_id': self.client_id,
            'match_id': self.match_id,
            'created_by': self.created_by,
            'status': self.status,
            'distribution': self.distribution,
            'max_players': self.max_players,
            'callback_url': self.callback_url,
            'requirements': self.requirements or [],
            'queued_players': self.queued_players or [],
            'historical_joiners': self.historical_joiners or [],
            'data': self.data or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Lobby":
        """Rebuild an unsaved lobby from its ``to_dict`` (notification) shape."""
        return cls(
            lobby_id=data['lobby_id'],
            client_id=data['client_id'],
            match_id=data['match_id'],
            created_by=data.get('created_by'),
            status=data['status'],
            distribution=data['distribution'],
            max_players=data.get('max_players'),
            callback_url=data.get('callback_url'),
            requirements=list(data.get('requirements', [])),
            queued_players=list(data.get('queued_players', [])),
            historical_joiners=list(data.get('historical_joiners', [])),
            data=dict(data.get('data', {})),
            created_at=_parse_datetime(data.get('created_at')),
        )


class Match(db.Model):
    __tablename__ = 'matches'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    client_id = db.Column(db.String(50), nullable=False, index=True)
    game = db.Column(db.String(50), nullable=False)
    map = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(40), nullable=False, default=MatchStatus.WAITING_FOR_LOBBY.value)
    callback_url = db.Column(db.String(500), nullable=True)
    required_players = db.Column(db.Integer, nullable=True)

    # Lighthouse server id plus the last snapshot received for it
    server_id = db.Column(db.String(100), nullable=True, index=True)
    server = db.Column(db.JSON, nullable=True)

    players = db.Column(db.JSON, nullable=False, default=list)
    # create_server, provider, config, sdr, whitelist
    preferences = db.Column(db.JSON, nullable=False, default=dict)
    # log_url, demo_url, score
    result = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in [s.value for s in MATCH_TERMINAL_STATUSES]

    def to_dict(self):
        return {
            'match_id': self.match_id,
            'client_id': self.client_id,
            'game': self.game,
            'map': self.map,
            'region': self.region,
            'status': self.status,
            'callback_url': self.callback_url,
            'required_players': self.required_players,
            'server_id': self.server_id,
            'server': self.server,
            'players': self.players or [],
            'preferences': self.preferences or {},
            'result': self.result or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Match":
        return cls(
            match_id=data['match_id'],
            client_id=data['client_id'],
            game=data['game'],
            map=data.get('map'),
            region=data['region'],
            status=data['status'],
            callback_url=data.get('callback_url'),
            required_players=data.get('required_players'),
            server_id=data.get('server_id'),
            server=data.get('server'),
            players=list(data.get('players', [])),
            preferences=dict(data.get('preferences', {})),
            result=dict(data.get('result', {})),
            created_at=_parse_datetime(data.get('created_at')),
        )
