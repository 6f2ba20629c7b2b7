"""
Team distribution strategies.

Every strategy answers three questions about a lobby:

- ``verify(player, lobby)``: may this join/role change happen?
    -1  already queued with the same roles, nothing to do
     0  rejected
     1  new entry
     2  role update of an existing entry
- ``accept(player, lobby)``: the queued player list after applying the join.
- ``distribute(lobby)``: the queued player list after team assignment.

Strategies never touch persistence; the lobby service stores what they return.
"""
import copy
import logging
import math
import random
from enum import Enum
from typing import Dict, List

from .errors import ValidationError
from .players import PlayerRole, is_class_role, same_identity, role_counts

logger = logging.getLogger(__name__)


class DistributionType(str, Enum):
    RANDOM = "RANDOM"
    TEAM_ROLE_BASED = "TEAM_ROLE_BASED"
    CAPTAIN_BASED = "CAPTAIN_BASED"


IDENTICAL = -1
REJECTED = 0
NEW_ENTRY = 1
ROLE_UPDATE = 2


def wanted_role(player: dict) -> str:
    return player['roles'][-1]


def _find_queued(player: dict, lobby) -> dict:
    for queued in lobby.queued_players or []:
        if same_identity(queued, player):
            return queued
    return None


def _requirement(lobby, name: str) -> dict:
    for req in lobby.requirements or []:
        if req['name'] == name:
            return req
    return None


def fill_state(requirements: List[dict], players: List[dict]) -> Dict[str, bool]:
    """Map each requirement name to whether its count is reached."""
    count = role_counts(players)
    return {req['name']: count.get(req['name'], 0) >= req['count'] for req in requirements}


def requirements_met(lobby) -> bool:
    """
    True when no requirement is unfilled and no non-overfill requirement is
    exceeded. Captain lobbies also need a full roster.
    """
    players = lobby.queued_players or []
    count = role_counts(players)

    unfilled = [r['name'] for r in lobby.requirements or [] if count.get(r['name'], 0) < r['count']]
    overfilled = [
        r['name'] for r in lobby.requirements or []
        if count.get(r['name'], 0) > r['count'] and not r.get('overfill', False)
    ]
    logger.debug(f"Lobby {lobby.lobby_id} tally {count}, unfilled {unfilled}, overfilled {overfilled}")

    if unfilled or overfilled:
        return False
    if lobby.distribution == DistributionType.CAPTAIN_BASED.value:
        return len(players) >= lobby.max_players
    return True


def _replace_roles(player: dict, lobby) -> List[dict]:
    players = copy.deepcopy(lobby.queued_players or [])
    for queued in players:
        if same_identity(queued, player):
            queued['roles'] = list(player['roles'])
            return players
    players.append(copy.deepcopy(player))
    return players


class RandomStrategy:
    """Coin flip teams for every ``player`` tagged entry."""

    def verify(self, player: dict, lobby) -> int:
        role = wanted_role(player)
        requirement = _requirement(lobby, role)
        if lobby.requirements and requirement is None:
            return REJECTED

        at_capacity = (
            requirement is not None
            and not requirement.get('overfill', False)
            and role_counts(lobby.queued_players or []).get(role, 0) >= requirement['count']
        )

        queued = _find_queued(player, lobby)
        if queued is not None:
            if set(queued['roles']) == set(player['roles']):
                return IDENTICAL
            if at_capacity and role not in queued['roles']:
                return REJECTED
            return ROLE_UPDATE

        if len(lobby.queued_players or []) >= lobby.max_players:
            return REJECTED
        if at_capacity:
            return REJECTED
        return NEW_ENTRY

    def accept(self, player: dict, lobby) -> List[dict]:
        return _replace_roles(player, lobby)

    def distribute(self, lobby) -> List[dict]:
        players = copy.deepcopy(lobby.queued_players or [])
        eligible = [p for p in players if PlayerRole.PLAYER.value in p['roles']]
        limit = math.ceil(len(eligible) / 2)
        teams = (PlayerRole.TEAM_A.value, PlayerRole.TEAM_B.value)
        count = [0, 0]

        for player in eligible:
            ours = random.randrange(2)
            if count[ours] >= limit:
                ours = 1 - ours
            player['roles'].append(teams[ours])
            count[ours] += 1

        logger.info(f"Lobby {lobby.lobby_id} split into {count[0]} vs {count[1]}")
        return players


class TeamRoleBasedStrategy:
    """Players pick their team and role when joining; the roster is kept as placed."""

    def verify(self, player: dict, lobby) -> int:
        role = wanted_role(player)
        requirement = _requirement(lobby, role)
        if requirement is None:
            return REJECTED

        requirements = lobby.requirements or []
        before = fill_state(requirements, lobby.queued_players or [])
        after = fill_state(requirements, _replace_roles(player, lobby))
        overfill = requirement.get('overfill', False)

        queued = _find_queued(player, lobby)
        if queued is not None:
            if set(queued['roles']) == set(player['roles']):
                return IDENTICAL
            # Switching is only for a role the entry does not hold yet
            if role in queued['roles']:
                return REJECTED
            if overfill or not (before[role] and after[role]):
                return ROLE_UPDATE
            return REJECTED

        if len(lobby.queued_players or []) >= lobby.max_players:
            return REJECTED
        if before[role] and after[role] and not overfill:
            return REJECTED
        return NEW_ENTRY

    def accept(self, player: dict, lobby) -> List[dict]:
        return _replace_roles(player, lobby)

    def distribute(self, lobby) -> List[dict]:
        return copy.deepcopy(lobby.queued_players or [])


class CaptainStrategy:
    """Queue for a captain draft; teams are formed later by picks."""

    def verify(self, player: dict, lobby) -> int:
        queued = _find_queued(player, lobby)
        if queued is not None:
            if set(queued['roles']) == set(player['roles']):
                return IDENTICAL
            return ROLE_UPDATE

        if len(lobby.queued_players or []) >= lobby.max_players:
            return REJECTED
        return NEW_ENTRY

    def accept(self, player: dict, lobby) -> List[dict]:
        players = copy.deepcopy(lobby.queued_players or [])
        for queued in players:
            if same_identity(queued, player):
                technical = [r for r in queued['roles'] if not is_class_role(r)]
                requested = [r for r in player['roles'] if is_class_role(r)]
                queued['roles'] = requested + technical
                return players
        players.append(copy.deepcopy(player))
        return players

    def distribute(self, lobby) -> List[dict]:
        return copy.deepcopy(lobby.queued_players or [])


STRATEGIES = {
    DistributionType.RANDOM: RandomStrategy(),
    DistributionType.TEAM_ROLE_BASED: TeamRoleBasedStrategy(),
    DistributionType.CAPTAIN_BASED: CaptainStrategy(),
}


def get_strategy(distribution):
    try:
        return STRATEGIES[DistributionType(distribution)]
    except ValueError:
        raise ValidationError(f"Unknown distribution type '{distribution}'")
