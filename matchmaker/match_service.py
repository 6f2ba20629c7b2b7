import logging
from typing import List, Optional

from flask import current_app

from .errors import (
    AdmissionError, NotFoundError, ProbeError, ProvisioningError,
    StateConflictError, ValidationError,
)
from .fleet import ServerStatus
from .models import Match
from .players import make_player
from .probe import is_in_progress, has_ended, extract_result
from .repositories import MatchRepository
from shared.state_machine import MatchStateMachine, MatchStatus, TransitionError

logger = logging.getLogger(__name__)

RESULT_FETCH = 'result-fetch'

# Statuses in which the server is polled by the supervisor
POLLED_STATUSES = (
    MatchStatus.WAITING_FOR_PLAYERS,
    MatchStatus.WAITING_TO_START,
    MatchStatus.LIVE,
)

# Statuses in which a closed or failed server means the match is over
RUNNING_STATUSES = POLLED_STATUSES + (MatchStatus.WAITING_TO_CLOSE,)

MIN_PLAYERS = 2
MAX_PLAYERS = 20


class MatchService:
    """
    Owns a match from creation to teardown: entitlement and quota checks,
    server provisioning through Lighthouse, status callbacks from the fleet,
    polling of the running server and collection of results.
    """

    def __init__(self, repository: MatchRepository = None, notifier=None, scheduler=None,
                 fleet=None, probe=None):
        self.matches = repository or MatchRepository()
        self.notifier = notifier
        self.scheduler = scheduler
        self.fleet = fleet
        self.probe = probe
        self.lobbies = None

    def bind_lobbies(self, lobbies):
        self.lobbies = lobbies

    # Queries

    def find(self, match_id: str) -> Optional[Match]:
        return self.matches.get(match_id)

    def get(self, client, match_id: str) -> Match:
        match = self.matches.get(match_id)
        if not match or match.client_id != client.client_id:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    def list_matches(self, client, active_only: bool = True) -> List[Match]:
        return self.matches.list_by_client(client.client_id, active_only=active_only)

    # Creation

    def create_request(self, client, options: dict) -> Match:
        """Validate entitlement and quota, then persist a match waiting for its lobby."""
        options = options or {}
        game = options.get('game')
        region = options.get('region')
        if not game or not region:
            raise ValidationError("game and region are required")

        try:
            required_players = int(options.get('required_players'))
        except (TypeError, ValueError):
            raise ValidationError("required_players must be a number")
        if not MIN_PLAYERS <= required_players <= MAX_PLAYERS:
            raise ValidationError(f"required_players must be between {MIN_PLAYERS} and {MAX_PLAYERS}")

        if not client.has_game_access(game):
            raise AdmissionError(f"Client does not have access to '{game}'", code='game_forbidden')
        if not client.has_region_access(region):
            raise AdmissionError(f"Client does not have access to '{region}' region", code='region_forbidden')

        if self.matches.count_active(client.client_id) >= client.get_limit():
            raise AdmissionError(
                "Client has reached its active match limit",
                code='quota_exceeded', status_code=429
            )
        region_limit = client.get_region_limit(region)
        if region_limit is not None and self.matches.count_active(client.client_id, region) >= region_limit:
            raise AdmissionError(
                f"Client has reached its active match limit in '{region}'",
                code='quota_exceeded', status_code=429
            )

        prefs = options.get('preferences') or {}
        match = Match(
            match_id=self.matches.new_id(),
            client_id=client.client_id,
            game=game,
            map=options.get('map'),
            region=region,
            status=MatchStatus.WAITING_FOR_LOBBY.value,
            callback_url=options.get('callback_url'),
            required_players=required_players,
            players=[make_player(p) for p in options.get('players') or []],
            preferences={
                'create_server': bool(prefs.get('create_server', True)),
                'provider': prefs.get('provider'),
                'config': prefs.get('config'),
                'sdr': bool(prefs.get('sdr', False)),
                'whitelist': bool(prefs.get('whitelist', False)),
            },
            result={},
        )
        self.matches.add(match)

        logger.info(f"Created match {match.match_id} ({game}, {region}) for client {client.client_id}")
        return match

    def player_join(self, client, match_id: str, data: dict) -> Match:
        """Add a player to a match that has not received its roster yet."""
        match = self.get(client, match_id)
        if match.status != MatchStatus.WAITING_FOR_LOBBY.value:
            raise StateConflictError(f"Match {match_id} is {match.status}, players cannot join")

        player = make_player(data)
        self.matches.set_players(match, (match.players or []) + [player])
        logger.info(f"Player {player['name']} joined match {match_id}")
        return match

    # Status changes

    def _transition(self, match: Match, action: str) -> Match:
        sm = MatchStateMachine.from_state_string(match.status)
        try:
            new_state = sm.transition(action)
        except TransitionError as e:
            raise StateConflictError(f"Match {match.match_id}: {e.reason}")

        old_status = match.status
        self.matches.set_status(match, new_state)
        logger.info(f"Match {match.match_id}: {old_status} -> {match.status}")

        if sm.is_terminal and self.scheduler:
            self.scheduler.cancel_entity(match.match_id)
        if self.notifier:
            self.notifier.notify('match', match)

        if new_state in (MatchStatus.FAILED, MatchStatus.FINISHED):
            self.lobbies.close_for_match(match.match_id)
        return match

    def fail(self, match: Match) -> Match:
        return self._transition(match, 'fail')

    def process_match(self, match_id: str, players: List[dict]) -> Optional[Match]:
        """Take over the distributed roster and start provisioning."""
        match = self.matches.get(match_id)
        if not match or match.status != MatchStatus.WAITING_FOR_LOBBY.value:
            logger.warning(f"Match {match_id} is not waiting for a lobby, ignoring roster")
            return match

        self.matches.set_players(match, players)
        self._transition(match, 'lobby_ready')

        prefs = match.preferences or {}
        if not prefs.get('create_server', True):
            return self._transition(match, 'go_live')

        self._transition(match, 'create_server')
        try:
            provider = prefs.get('provider')
            if not provider:
                providers = self.fleet.get_region_providers(match.region)
                if not providers:
                    raise ProvisioningError(f"No provider available in region {match.region}")
                provider = providers[0]

            server = self.fleet.create_server(
                match.game,
                match.region,
                provider,
                data={
                    'map': match.map,
                    'config': prefs.get('config'),
                    'sdr': prefs.get('sdr', False),
                }
            )
            self.matches.set_server(match, server)
        except ProvisioningError as e:
            logger.error(f"Match {match_id} could not get a server: {e}")
            return self.fail(match)

        return match

    def handle_server_status(self, server: dict, status: str) -> Match:
        """Apply a status callback from the fleet manager."""
        server_id = (server or {}).get('_id') or (server or {}).get('id')
        if not server_id:
            raise ValidationError("server._id is required")
        try:
            status = ServerStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown server status '{status}'")

        match = self.matches.find_by_server(server_id)
        if not match:
            raise NotFoundError(f"No match for server {server_id}")

        logger.info(f"Server {server_id} of match {match.match_id} is {status.value}")
        self.matches.set_server(match, server)

        if match.status == MatchStatus.CREATING_SERVER.value:
            if status in (ServerStatus.IDLE, ServerStatus.RUNNING):
                self._transition(match, 'server_ready')
                if (match.preferences or {}).get('whitelist'):
                    self.whitelist_roster(match)
            elif status in (ServerStatus.CLOSED, ServerStatus.FAILED):
                self.fail(match)
        elif match.status in [s.value for s in RUNNING_STATUSES]:
            if status in (ServerStatus.CLOSED, ServerStatus.FAILED):
                self._transition(match, 'finish')

        return match

    # Polling

    def monitor_match(self, match_id: str) -> Optional[Match]:
        match = self.matches.get(match_id)
        if not match or not match.server or match.status not in [s.value for s in POLLED_STATUSES]:
            return match

        server = match.server
        try:
            if match.status == MatchStatus.WAITING_FOR_PLAYERS.value:
                count = self.probe.query_players(server.get('ip'), server.get('port'), match.game)
                logger.debug(f"Match {match_id} has {count}/{len(match.players or [])} players connected")
                if count >= len(match.players or []):
                    self._transition(match, 'players_joined')

            elif match.status == MatchStatus.WAITING_TO_START.value:
                status = self.probe.sidecar_for(server).get_status()
                if is_in_progress(status):
                    self._transition(match, 'go_live')
                elif has_ended(status):
                    # Played out between two sweeps
                    self._transition(match, 'go_live')
                    self._transition(match, 'end')
                    self.begin_result_fetch(match)

            elif match.status == MatchStatus.LIVE.value:
                if has_ended(self.probe.sidecar_for(server).get_status()):
                    self._transition(match, 'end')
                    self.begin_result_fetch(match)
        except ProbeError as e:
            logger.error(f"Polling match {match_id} failed: {e}")

        return match

    def begin_result_fetch(self, match: Match):
        self.scheduler.schedule((RESULT_FETCH, match.match_id), 0, self.fetch_results, match.match_id, 1)

    def fetch_results(self, match_id: str, attempt: int) -> Optional[Match]:
        match = self.matches.get(match_id)
        if not match or match.status != MatchStatus.WAITING_TO_CLOSE.value:
            return match

        retries = current_app.config['RESULT_FETCH_RETRIES']
        result = None
        try:
            result = extract_result(self.probe.sidecar_for(match.server or {}).get_status())
        except ProbeError as e:
            logger.warning(f"Result fetch {attempt}/{retries} for match {match_id} failed: {e}")

        if result:
            self.matches.set_result(match, result)
            logger.info(f"Stored results of match {match_id}")
            return self._complete(match)

        if attempt >= retries:
            logger.error(f"No results for match {match_id} after {retries} attempts")
            return self._complete(match)

        self.scheduler.schedule(
            (RESULT_FETCH, match_id),
            current_app.config['RESULT_FETCH_INTERVAL'],
            self.fetch_results, match_id, attempt + 1
        )
        return match

    def _complete(self, match: Match) -> Match:
        self.teardown(match)
        return self._transition(match, 'finish')

    def teardown(self, match: Match):
        if not match.server_id:
            return
        try:
            self.fleet.delete_server(match.server_id)
        except ProvisioningError as e:
            logger.error(f"Teardown of match {match.match_id} failed: {e}")

    # Whitelist

    def _sidecar(self, match: Match):
        if not match.server:
            raise StateConflictError(f"Match {match.match_id} has no server")
        return self.probe.sidecar_for(match.server)

    def whitelist_roster(self, match: Match):
        try:
            sidecar = self._sidecar(match)
            sidecar.enable_whitelist()
            for player in match.players or []:
                if player.get('steam'):
                    sidecar.add_whitelist_player(player)
        except ProbeError as e:
            logger.error(f"Whitelisting roster of match {match.match_id} failed: {e}")

    def whitelist_player(self, client, match_id: str, data: dict) -> Match:
        match = self.get(client, match_id)
        player = make_player(data)
        if not player.get('steam'):
            raise ValidationError("A steam id is required to whitelist a player")
        self._sidecar(match).add_whitelist_player(player)
        return match

    def unwhitelist_player(self, client, match_id: str, steam: str) -> Match:
        match = self.get(client, match_id)
        self._sidecar(match).remove_whitelist_player({'steam': steam})
        return match

    # Closing

    def close_match(self, match: Match) -> Match:
        if match.is_terminal:
            raise StateConflictError(f"Match {match.match_id} is already {match.status}")

        if match.server:
            try:
                self.probe.sidecar_for(match.server).kick_all()
            except ProbeError as e:
                logger.warning(f"Could not kick players of match {match.match_id}: {e}")
        self.teardown(match)
        return self._transition(match, 'close')

    def close(self, client, match_id: str) -> Match:
        match = self.get(client, match_id)
        self.close_match(match)
        self.lobbies.close_for_match(match_id)
        return match
