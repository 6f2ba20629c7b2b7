import logging
import random
from typing import List, Optional, Tuple

from flask import current_app

from .distribution import DistributionType, get_strategy, requirements_met, IDENTICAL, REJECTED
from .errors import AdmissionError, NotFoundError, StateConflictError, ValidationError
from .models import Lobby
from .players import (
    PlayerRole, CAPTAIN_TEAM, ID_TYPES, make_player, find_player, find_index,
    identity, captain_team, qualified_role, has_role,
)
from .repositories import LobbyRepository
from shared.state_machine import (
    LobbyStateMachine, LobbyStatus, TransitionError, LOBBY_EDITABLE_STATUSES,
)

logger = logging.getLogger(__name__)

PICK_TIMER = 'pick-timer'


def _id_key(player: dict) -> Tuple[str, str]:
    for id_type in ID_TYPES:
        if player.get(id_type):
            return id_type, player[id_type]
    raise ValidationError("Player needs a discord id, steam id or name")


def _validate_requirements(requirements) -> List[dict]:
    if requirements is None:
        return []
    if not isinstance(requirements, list):
        raise ValidationError("requirements must be a list")

    result = []
    for req in requirements:
        if not isinstance(req, dict) or not req.get('name'):
            raise ValidationError("Each requirement needs a name")
        try:
            count = int(req.get('count', 0))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid count for requirement '{req['name']}'")
        if count < 0:
            raise ValidationError(f"Invalid count for requirement '{req['name']}'")
        result.append({
            'name': str(req['name']),
            'count': count,
            'overfill': bool(req.get('overfill', False)),
        })
    return result


class LobbyService:
    """
    Drives lobbies from queueing to a distributed roster:
    - admission of creators and players
    - role edits and AFK confirmation
    - captain selection and draft picks
    - distribution and hand-off to the match
    - closing and expiry, cascading to the match
    """

    def __init__(self, repository: LobbyRepository = None, notifier=None, scheduler=None):
        self.lobbies = repository or LobbyRepository()
        self.notifier = notifier
        self.scheduler = scheduler
        self.matches = None

    def bind_matches(self, matches):
        self.matches = matches

    # Queries

    def get(self, client, lobby_id: str) -> Lobby:
        lobby = self.lobbies.get(lobby_id)
        if not lobby or lobby.client_id != client.client_id:
            raise NotFoundError(f"Lobby {lobby_id} not found")
        return lobby

    def get_by_match(self, client, match_id: str) -> Lobby:
        lobby = self.lobbies.find_by_match(match_id)
        if not lobby or lobby.client_id != client.client_id:
            raise NotFoundError(f"No lobby for match {match_id}")
        return lobby

    def list_lobbies(self, client, active_only: bool = True) -> List[Lobby]:
        return self.lobbies.list_by_client(client.client_id, active_only=active_only)

    def get_player(self, client, lobby_id: str, pid: str, id_type: str = 'discord') -> dict:
        lobby = self.get(client, lobby_id)
        player = find_player(lobby.queued_players or [], pid, id_type)
        if player is None:
            raise NotFoundError(f"Player {pid} is not queued in lobby {lobby_id}")
        return player

    def check_requirements_met(self, lobby: Lobby) -> bool:
        return requirements_met(lobby)

    # Admission

    def _ensure_not_engaged(self, id_type: str, pid: str, lobby_id: str = None):
        """A user may be creator of, or queued in, at most one active lobby."""
        queued = [l for l in self.lobbies.find_active_with_player(pid, id_type) if l.lobby_id != lobby_id]
        if queued:
            raise AdmissionError(f"{pid} is already queued in lobby {queued[0].lobby_id}")

        created = [l for l in self.lobbies.find_active_by_creator(pid) if l.lobby_id != lobby_id]
        if created:
            raise AdmissionError(f"{pid} already created lobby {created[0].lobby_id}")

    def create_request(self, client, options: dict) -> Lobby:
        """Create a lobby and its backing match."""
        options = options or {}
        user_id = options.get('user_id')
        if not user_id:
            raise ValidationError("user_id is required")

        match_options = options.get('match_options')
        if not isinstance(match_options, dict):
            raise ValidationError("match_options is required")

        distribution = options.get('distribution')
        get_strategy(distribution)
        requirements = _validate_requirements(options.get('requirements'))

        initial = [make_player(p) for p in options.get('queued_players') or []]
        seen = set()
        for player in initial:
            key = _id_key(player)
            if key in seen:
                raise ValidationError(f"Player {key[1]} is listed twice")
            seen.add(key)

        # Membership scans run before anything is created
        self._ensure_not_engaged('discord', user_id)
        for player in initial:
            id_type, pid = _id_key(player)
            self._ensure_not_engaged(id_type, pid)

        callback_url = options.get('callback_url')
        match_options = dict(match_options)
        if not match_options.get('callback_url'):
            match_options['callback_url'] = callback_url

        match = self.matches.create_request(client, match_options)

        data = options.get('data') or {}
        lobby = Lobby(
            lobby_id=self.lobbies.new_id(),
            client_id=client.client_id,
            match_id=match.match_id,
            created_by=user_id,
            status=LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS.value,
            distribution=DistributionType(distribution).value,
            max_players=match.required_players,
            callback_url=callback_url,
            requirements=requirements,
            queued_players=initial,
            historical_joiners=[identity(p) for p in initial],
            data={
                'expiry_time': int(data.get('expiry_time') or current_app.config['DEFAULT_LOBBY_EXPIRY']),
                'extra_expiry_time': 0,
                'afk_check': bool(data.get('afk_check', False)),
                'captain_pick_timeout': int(
                    data.get('captain_pick_timeout') or current_app.config['DEFAULT_CAPTAIN_PICK_TIMEOUT']
                ),
                'pick_timer_armed': False,
            },
        )
        self.lobbies.add(lobby)

        logger.info(f"Created lobby {lobby.lobby_id} ({lobby.distribution}) for match {match.match_id} by {user_id}")
        return lobby

    def add_player(self, client, lobby_id: str, data: dict) -> Lobby:
        lobby = self.get(client, lobby_id)
        player = make_player(data)
        id_type, pid = _id_key(player)

        self._ensure_not_engaged(id_type, pid, lobby_id=lobby.lobby_id)

        if lobby.status != LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS.value:
            raise StateConflictError(f"Lobby {lobby_id} is not accepting players ({lobby.status})")

        strategy = get_strategy(lobby.distribution)
        code = strategy.verify(player, lobby)
        if code == IDENTICAL:
            return lobby
        if code == REJECTED:
            raise AdmissionError(f"{player['name']} cannot join lobby {lobby_id} as {player['roles'][-1]}")

        self.lobbies.replace_queued_players(lobby, strategy.accept(player, lobby))

        joiner = identity(player)
        if joiner not in (lobby.historical_joiners or []):
            self.lobbies.replace_historical_joiners(lobby, (lobby.historical_joiners or []) + [joiner])
            extra = int(lobby.data['expiry_time'] * current_app.config['EXTRA_EXPIRY_RATIO'])
            self.lobbies.update_data(lobby, extra_expiry_time=lobby.data.get('extra_expiry_time', 0) + extra)

        logger.info(f"{player['name']} joined lobby {lobby_id} with roles {player['roles']}")
        return lobby

    # Player edits

    def _editable(self, client, lobby_id: str) -> Lobby:
        lobby = self.get(client, lobby_id)
        if lobby.status not in [s.value for s in LOBBY_EDITABLE_STATUSES]:
            raise StateConflictError(f"Players of lobby {lobby_id} cannot be changed ({lobby.status})")
        return lobby

    def _player_index(self, lobby: Lobby, pid: str, id_type: str) -> int:
        index = find_index(lobby.queued_players or [], pid, id_type)
        if index == -1:
            raise NotFoundError(f"Player {pid} is not queued in lobby {lobby.lobby_id}")
        return index

    def remove_player(self, client, lobby_id: str, pid: str, id_type: str = 'discord') -> Lobby:
        lobby = self._editable(client, lobby_id)
        index = self._player_index(lobby, pid, id_type)

        players = list(lobby.queued_players)
        removed = players.pop(index)
        self.lobbies.replace_queued_players(lobby, players)

        logger.info(f"{removed['name']} left lobby {lobby_id}")
        return lobby

    def add_player_role(self, client, lobby_id: str, pid: str, role: str, id_type: str = 'discord') -> Lobby:
        lobby = self._editable(client, lobby_id)
        index = self._player_index(lobby, pid, id_type)

        players = [dict(p) for p in lobby.queued_players]
        if role not in players[index]['roles']:
            players[index]['roles'] = players[index]['roles'] + [role]
            self.lobbies.replace_queued_players(lobby, players)
        return lobby

    def remove_player_role(self, client, lobby_id: str, pid: str, role: str, id_type: str = 'discord') -> Lobby:
        lobby = self._editable(client, lobby_id)
        index = self._player_index(lobby, pid, id_type)

        players = [dict(p) for p in lobby.queued_players]
        if role in players[index]['roles']:
            players[index]['roles'] = [r for r in players[index]['roles'] if r != role]
            self.lobbies.replace_queued_players(lobby, players)
        return lobby

    def set_player_afk(self, client, lobby_id: str, pid: str, afk: bool, id_type: str = 'discord') -> Lobby:
        lobby = self._editable(client, lobby_id)
        index = self._player_index(lobby, pid, id_type)

        players = [dict(p) for p in lobby.queued_players]
        players[index]['afk'] = bool(afk)
        self.lobbies.replace_queued_players(lobby, players)
        return lobby

    # Status changes

    def _transition(self, lobby: Lobby, action: str) -> Lobby:
        sm = LobbyStateMachine.from_state_string(lobby.status)
        try:
            new_state = sm.transition(action)
        except TransitionError as e:
            raise StateConflictError(f"Lobby {lobby.lobby_id}: {e.reason}")

        old_status = lobby.status
        self.lobbies.set_status(lobby, new_state)
        logger.info(f"Lobby {lobby.lobby_id}: {old_status} -> {lobby.status}")

        if sm.is_terminal and self.scheduler:
            self.scheduler.cancel_entity(lobby.lobby_id)
        if self.notifier:
            self.notifier.notify('lobby', lobby)
        return lobby

    def _close_match(self, lobby: Lobby):
        match = self.matches.find(lobby.match_id)
        if match and not match.is_terminal:
            self.matches.close_match(match)

    def close(self, client, lobby_id: str) -> Lobby:
        lobby = self.get(client, lobby_id)
        if lobby.is_terminal:
            return lobby

        self._close_match(lobby)
        return self._transition(lobby, 'close')

    def close_for_match(self, match_id: str) -> Optional[Lobby]:
        """Close the lobby of a match that already reached a terminal state."""
        lobby = self.lobbies.find_by_match(match_id)
        if not lobby or lobby.is_terminal:
            return lobby
        return self._transition(lobby, 'close')

    def expire(self, lobby: Lobby) -> Lobby:
        logger.info(f"Lobby {lobby.lobby_id} expired at {lobby.expires_at.isoformat()}")
        self._close_match(lobby)
        return self._transition(lobby, 'expire')

    # AFK check

    def begin_afk_check(self, lobby: Lobby) -> Lobby:
        players = [dict(p, afk=True) for p in lobby.queued_players or []]
        self.lobbies.replace_queued_players(lobby, players)
        return self._transition(lobby, 'afk_check')

    def revert_afk_check(self, lobby: Lobby) -> Lobby:
        players = [dict(p, afk=False) for p in lobby.queued_players or []]
        self.lobbies.replace_queued_players(lobby, players)
        return self._transition(lobby, 'revert')

    @staticmethod
    def afk_players(lobby: Lobby) -> List[dict]:
        return [p for p in lobby.queued_players or [] if p.get('afk')]

    # Captain draft

    def arm_pick_timer(self, lobby: Lobby) -> bool:
        """Schedule captain selection once per lobby. Returns False if already armed."""
        if (lobby.data or {}).get('pick_timer_armed'):
            return False

        self.lobbies.update_data(lobby, pick_timer_armed=True)
        timeout = lobby.data.get('captain_pick_timeout', 0)
        self.scheduler.schedule((PICK_TIMER, lobby.lobby_id), timeout, self.start_picks, lobby.lobby_id)
        logger.info(f"Lobby {lobby.lobby_id} will select captains in {timeout}s")
        return True

    @staticmethod
    def select_captains(players: List[dict]) -> List[dict]:
        volunteers = [p for p in players if has_role(p, PlayerRole.CAN_CAPTAIN)]
        if len(volunteers) == 2:
            return volunteers
        if len(volunteers) > 2:
            return random.sample(volunteers, 2)
        return random.sample(players, 2)

    def start_picks(self, lobby_id: str) -> Optional[Lobby]:
        lobby = self.lobbies.get(lobby_id)
        if not lobby or lobby.status not in [s.value for s in LOBBY_EDITABLE_STATUSES]:
            return lobby

        if not self.check_requirements_met(lobby):
            self.lobbies.update_data(lobby, pick_timer_armed=False)
            logger.info(f"Lobby {lobby_id} lost its roster before captain selection")
            return lobby

        players = [dict(p) for p in lobby.queued_players]
        captains = self.select_captains(players)
        for captain, captain_role in zip(captains, CAPTAIN_TEAM):
            team = CAPTAIN_TEAM[captain_role]
            captain['roles'] = [PlayerRole.CAN_CAPTAIN.value, captain_role, team, PlayerRole.PLAYER.value]

        self.lobbies.replace_queued_players(lobby, players)
        logger.info(f"Lobby {lobby_id} captains: {[c['name'] for c in captains]}")
        return self._transition(lobby, 'start_picks')

    def perform_pick(self, client, lobby_id: str, captain_id: str, picked_id: str, role: str,
                     id_type: str = 'discord') -> Lobby:
        lobby = self.get(client, lobby_id)
        if lobby.distribution != DistributionType.CAPTAIN_BASED.value:
            raise StateConflictError(f"Lobby {lobby_id} is not a captain draft")
        if lobby.status != LobbyStatus.WAITING_FOR_PICKS.value:
            raise StateConflictError(f"Lobby {lobby_id} is not waiting for picks ({lobby.status})")

        players = [dict(p) for p in lobby.queued_players]

        captain = find_player(players, captain_id, id_type)
        team = captain_team(captain) if captain else None
        if team is None:
            raise AdmissionError(f"{captain_id} is not a captain of lobby {lobby_id}")

        requirement = next((r for r in lobby.requirements or [] if r['name'] == role), None)
        if requirement is None:
            raise NotFoundError(f"Role {role} is not required in lobby {lobby_id}")

        team_role = qualified_role(team, role)
        taken = len([p for p in players if has_role(p, team_role)])
        if taken >= requirement['count'] // 2:
            raise AdmissionError(f"Team {team} already has every {role} it needs")

        picked = find_player(players, picked_id, id_type)
        if picked is None:
            raise NotFoundError(f"Player {picked_id} is not queued in lobby {lobby_id}")
        if has_role(picked, PlayerRole.PICKED) or captain_team(picked):
            raise AdmissionError(f"{picked['name']} was already picked")

        picked['roles'] = [PlayerRole.PLAYER.value, PlayerRole.PICKED.value, team, role, team_role]
        self.lobbies.replace_queued_players(lobby, players)

        logger.info(f"Lobby {lobby_id}: {captain['name']} picked {picked['name']} as {team_role}")
        return lobby

    @staticmethod
    def is_done_picking(lobby: Lobby) -> bool:
        picked = [
            p for p in lobby.queued_players or []
            if has_role(p, PlayerRole.PICKED) and not captain_team(p)
        ]
        return len(picked) == lobby.max_players - 2

    # Distribution

    def process_lobby(self, lobby: Lobby) -> Lobby:
        """Distribute teams and hand the roster to the match."""
        self._transition(lobby, 'distribute')

        strategy = get_strategy(lobby.distribution)
        self.lobbies.replace_queued_players(lobby, strategy.distribute(lobby))

        self._transition(lobby, 'distributed')
        self.matches.process_match(lobby.match_id, lobby.queued_players)
        return lobby
