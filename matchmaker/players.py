from enum import Enum
from typing import Dict, List, Optional

from .errors import ValidationError


class PlayerRole(str, Enum):
    PLAYER = "player"
    CAPTAIN = "captain"
    CAN_CAPTAIN = "can-captain"
    CREATOR = "creator"
    PICKED = "picked"
    TEAM_A = "team_a"
    TEAM_B = "team_b"
    CAPTAIN_A = "captain_a"
    CAPTAIN_B = "captain_b"

    # Class roles
    SCOUT = "scout"
    SOLDIER = "soldier"
    PYRO = "pyro"
    DEMOMAN = "demoman"
    HEAVY = "heavy"
    ENGINEER = "engineer"
    MEDIC = "medic"
    SNIPER = "sniper"
    SPY = "spy"


CLASS_NAMES = [
    PlayerRole.SCOUT, PlayerRole.SOLDIER, PlayerRole.PYRO,
    PlayerRole.DEMOMAN, PlayerRole.HEAVY, PlayerRole.ENGINEER,
    PlayerRole.MEDIC, PlayerRole.SNIPER, PlayerRole.SPY,
]

# Team tag -> prefix of team qualified class names ("red-scout", "blu-medic")
TEAM_PREFIX = {
    PlayerRole.TEAM_A.value: "red",
    PlayerRole.TEAM_B.value: "blu",
}

CAPTAIN_TEAM = {
    PlayerRole.CAPTAIN_A.value: PlayerRole.TEAM_A.value,
    PlayerRole.CAPTAIN_B.value: PlayerRole.TEAM_B.value,
}

ID_TYPES = ('discord', 'steam', 'name')


def qualified_role(team: str, role: str) -> str:
    return f"{TEAM_PREFIX[team]}-{role}"


def is_class_role(role: str) -> bool:
    """Class roles are the preferences a player states when queueing."""
    if role == PlayerRole.CAN_CAPTAIN.value:
        return True
    names = [c.value for c in CLASS_NAMES]
    if role in names:
        return True
    prefix, _, rest = role.partition("-")
    return prefix in TEAM_PREFIX.values() and rest in names


def identity(player: dict) -> Optional[str]:
    return player.get('discord') or player.get('steam') or player.get('name')


def same_identity(a: dict, b: dict) -> bool:
    return identity(a) is not None and identity(a) == identity(b)


def find_player(players: List[dict], pid: str, id_type: str = 'discord') -> Optional[dict]:
    if id_type not in ID_TYPES:
        raise ValidationError(f"Unknown player id type '{id_type}'")
    for player in players:
        if player.get(id_type) == pid:
            return player
    return None


def find_index(players: List[dict], pid: str, id_type: str = 'discord') -> int:
    player = find_player(players, pid, id_type)
    return players.index(player) if player is not None else -1


def make_player(data: dict) -> dict:
    """Normalise an inbound player object."""
    if not isinstance(data, dict):
        raise ValidationError("Player must be an object")

    name = data.get('name')
    if not name:
        raise ValidationError("Player name is required")

    roles = data.get('roles')
    if not isinstance(roles, list) or not roles:
        raise ValidationError("Player roles must be a non-empty list")

    return {
        'name': name,
        'discord': data.get('discord'),
        'steam': data.get('steam'),
        'roles': [str(r) for r in roles],
        'afk': bool(data.get('afk', False)),
    }


def role_counts(players: List[dict]) -> Dict[str, int]:
    count: Dict[str, int] = {}
    for player in players:
        for role in player.get('roles', []):
            count[role] = count.get(role, 0) + 1
    return count


def has_role(player: dict, role) -> bool:
    value = role.value if isinstance(role, PlayerRole) else role
    return value in player.get('roles', [])


def captain_team(player: dict) -> Optional[str]:
    for captain_role, team in CAPTAIN_TEAM.items():
        if captain_role in player.get('roles', []):
            return team
    return None


def whitelist_entry(player: dict) -> dict:
    """Map a rostered player onto the sidecar whitelist format."""
    roles = player.get('roles', [])

    team = ''
    if PlayerRole.TEAM_A.value in roles or any(r.startswith('red-') for r in roles):
        team = 'RED'
    elif PlayerRole.TEAM_B.value in roles or any(r.startswith('blu-') for r in roles):
        team = 'BLU'

    player_class = ''
    for name in CLASS_NAMES:
        if any(r == name.value or r.endswith(f"-{name.value}") for r in roles):
            player_class = name.value
            break

    return {
        'steam': player.get('steam'),
        'name': player.get('name'),
        'team': team,
        'class': player_class,
    }
