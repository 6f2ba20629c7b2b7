import logging
import random
from datetime import datetime

from flask import current_app

from .errors import MatchmakerError
from .match_service import POLLED_STATUSES
from .distribution import DistributionType
from shared.state_machine import LobbyStatus

logger = logging.getLogger(__name__)

LOBBY_SWEEP = ('sweep', 'lobbies')
MATCH_SWEEP = ('sweep', 'matches')
LOBBY_EVAL = 'lobby-eval'
MATCH_POLL = 'match-poll'

# Lobbies that still wait on players, an AFK check or picks
SUPERVISED_STATUSES = (
    LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS,
    LobbyStatus.WAITING_FOR_AFK_CHECK,
    LobbyStatus.WAITING_FOR_PICKS,
)


class ExpirySupervisor:
    """
    Periodically moves pending lobbies forward and polls running matches.

    Each sweep only schedules one short, randomly delayed evaluation per
    record; the evaluation itself re-reads the record before acting.
    """

    def __init__(self, lobbies, matches, scheduler):
        self.lobbies = lobbies
        self.matches = matches
        self.scheduler = scheduler

    def start(self):
        config = current_app.config
        self.scheduler.every(LOBBY_SWEEP, config['LOBBY_MONITOR_INTERVAL'], self.sweep_lobbies)
        self.scheduler.every(MATCH_SWEEP, config['MATCH_MONITOR_INTERVAL'], self.sweep_matches)
        logger.info(
            f"Supervisor started (lobbies every {config['LOBBY_MONITOR_INTERVAL']}s, "
            f"matches every {config['MATCH_MONITOR_INTERVAL']}s)"
        )

    def stop(self):
        self.scheduler.cancel(LOBBY_SWEEP)
        self.scheduler.cancel(MATCH_SWEEP)

    def _spread(self) -> float:
        return random.uniform(0, current_app.config['MONITOR_SPREAD_DELAY'])

    def sweep_lobbies(self) -> int:
        lobbies = self.lobbies.lobbies.find_by_statuses(SUPERVISED_STATUSES)
        for lobby in lobbies:
            self.scheduler.schedule((LOBBY_EVAL, lobby.lobby_id), self._spread(), self.evaluate_lobby, lobby.lobby_id)
        return len(lobbies)

    def sweep_matches(self) -> int:
        matches = [m for m in self.matches.matches.find_by_statuses(POLLED_STATUSES) if m.server]
        for match in matches:
            self.scheduler.schedule((MATCH_POLL, match.match_id), self._spread(), self.matches.monitor_match, match.match_id)
        return len(matches)

    def evaluate_lobby(self, lobby_id: str):
        lobby = self.lobbies.lobbies.get(lobby_id)
        if not lobby or lobby.status not in [s.value for s in SUPERVISED_STATUSES]:
            return lobby

        try:
            return self._evaluate(lobby)
        except MatchmakerError as e:
            logger.error(f"Evaluating lobby {lobby_id} failed: {e.message}")
            return lobby

    def _evaluate(self, lobby):
        service = self.lobbies
        status = LobbyStatus(lobby.status)

        if status != LobbyStatus.WAITING_FOR_PICKS and datetime.utcnow() > lobby.expires_at:
            return service.expire(lobby)

        if status == LobbyStatus.WAITING_FOR_PICKS:
            if service.is_done_picking(lobby):
                return service.process_lobby(lobby)
            return lobby

        if service.check_requirements_met(lobby):
            if (lobby.data or {}).get('afk_check'):
                if status == LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS:
                    return service.begin_afk_check(lobby)
                if service.afk_players(lobby):
                    return lobby

            if lobby.distribution == DistributionType.CAPTAIN_BASED.value:
                service.arm_pick_timer(lobby)
                return lobby
            return service.process_lobby(lobby)

        if status == LobbyStatus.WAITING_FOR_AFK_CHECK:
            return service.revert_afk_check(lobby)
        return lobby
