"""
Persistence boundary for lobbies, matches and clients.

Orchestrators never mutate a row and commit on their own; each logical
mutation goes through one typed update here and is committed once.
JSON columns are always replaced with fresh copies so SQLAlchemy sees the
change.
"""
import copy
import uuid
from typing import Iterable, List, Optional

from .models import db, Lobby, Match, Client
from shared.state_machine import LOBBY_ACTIVE_STATUSES, MATCH_ACTIVE_STATUSES


def _values(statuses: Iterable) -> List[str]:
    return [s.value if hasattr(s, 'value') else s for s in statuses]


class LobbyRepository:

    def new_id(self) -> str:
        return f"l_{uuid.uuid4().hex[:12]}"

    def add(self, lobby: Lobby) -> Lobby:
        db.session.add(lobby)
        db.session.commit()
        return lobby

    def get(self, lobby_id: str) -> Optional[Lobby]:
        return Lobby.query.filter_by(lobby_id=lobby_id).first()

    def refresh(self, lobby: Lobby) -> Lobby:
        db.session.refresh(lobby)
        return lobby

    def find_by_match(self, match_id: str) -> Optional[Lobby]:
        return Lobby.query.filter_by(match_id=match_id).first()

    def find_by_statuses(self, statuses: Iterable, client_id: str = None) -> List[Lobby]:
        query = Lobby.query.filter(Lobby.status.in_(_values(statuses)))
        if client_id:
            query = query.filter_by(client_id=client_id)
        return query.order_by(Lobby.created_at).all()

    def list_by_client(self, client_id: str, active_only: bool = True, limit: int = 50) -> List[Lobby]:
        query = Lobby.query.filter_by(client_id=client_id)
        if active_only:
            query = query.filter(Lobby.status.in_(_values(LOBBY_ACTIVE_STATUSES)))
        return query.order_by(Lobby.created_at.desc()).limit(limit).all()

    def find_active_by_creator(self, user_id: str) -> List[Lobby]:
        return Lobby.query.filter(
            Lobby.created_by == user_id,
            Lobby.status.in_(_values(LOBBY_ACTIVE_STATUSES))
        ).all()

    def find_active_with_player(self, pid: str, id_type: str = 'discord') -> List[Lobby]:
        # JSON containment is not portable across backends, filter in Python
        return [
            lobby for lobby in self.find_by_statuses(LOBBY_ACTIVE_STATUSES)
            if any(p.get(id_type) == pid for p in lobby.queued_players or [])
        ]

    def set_status(self, lobby: Lobby, status) -> Lobby:
        lobby.status = status.value if hasattr(status, 'value') else status
        db.session.commit()
        return lobby

    def replace_queued_players(self, lobby: Lobby, players: List[dict]) -> Lobby:
        lobby.queued_players = copy.deepcopy(players)
        db.session.commit()
        return lobby

    def replace_historical_joiners(self, lobby: Lobby, joiners: List[str]) -> Lobby:
        lobby.historical_joiners = list(joiners)
        db.session.commit()
        return lobby

    def update_data(self, lobby: Lobby, **changes) -> Lobby:
        data = dict(lobby.data or {})
        data.update(changes)
        lobby.data = data
        db.session.commit()
        return lobby


class MatchRepository:

    def new_id(self) -> str:
        return f"m_{uuid.uuid4().hex[:12]}"

    def add(self, match: Match) -> Match:
        db.session.add(match)
        db.session.commit()
        return match

    def get(self, match_id: str) -> Optional[Match]:
        return Match.query.filter_by(match_id=match_id).first()

    def find_by_server(self, server_id: str) -> Optional[Match]:
        return Match.query.filter_by(server_id=server_id).first()

    def find_by_statuses(self, statuses: Iterable, client_id: str = None) -> List[Match]:
        query = Match.query.filter(Match.status.in_(_values(statuses)))
        if client_id:
            query = query.filter_by(client_id=client_id)
        return query.order_by(Match.created_at).all()

    def list_by_client(self, client_id: str, active_only: bool = True, limit: int = 50) -> List[Match]:
        query = Match.query.filter_by(client_id=client_id)
        if active_only:
            query = query.filter(Match.status.in_(_values(MATCH_ACTIVE_STATUSES)))
        return query.order_by(Match.created_at.desc()).limit(limit).all()

    def count_active(self, client_id: str, region: str = None) -> int:
        query = Match.query.filter(
            Match.client_id == client_id,
            Match.status.in_(_values(MATCH_ACTIVE_STATUSES))
        )
        if region:
            query = query.filter_by(region=region)
        return query.count()

    def set_status(self, match: Match, status) -> Match:
        match.status = status.value if hasattr(status, 'value') else status
        db.session.commit()
        return match

    def set_players(self, match: Match, players: List[dict]) -> Match:
        match.players = copy.deepcopy(players)
        db.session.commit()
        return match

    def set_server(self, match: Match, server: dict) -> Match:
        server = copy.deepcopy(server or {})
        match.server_id = server.get('_id') or server.get('id') or match.server_id
        match.server = server
        db.session.commit()
        return match

    def set_result(self, match: Match, result: dict) -> Match:
        match.result = dict(result)
        db.session.commit()
        return match


class ClientRepository:

    def get(self, client_id: str) -> Optional[Client]:
        return Client.query.filter_by(client_id=client_id).first()

    def create(self, name: str, secret: str, games: List[str], regions: dict, limit: int) -> Client:
        client = Client(
            client_id=f"c_{uuid.uuid4().hex[:12]}",
            name=name,
            access={'games': list(games), 'regions': dict(regions), 'limit': limit},
        )
        client.set_secret(secret)
        db.session.add(client)
        db.session.commit()
        return client
