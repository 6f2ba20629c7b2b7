from enum import Enum
from typing import Optional, Callable, List
from dataclasses import dataclass


class LobbyStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    WAITING_FOR_REQUIRED_PLAYERS = "WAITING_FOR_REQUIRED_PLAYERS"
    WAITING_FOR_AFK_CHECK = "WAITING_FOR_AFK_CHECK"
    WAITING_FOR_PICKS = "WAITING_FOR_PICKS"
    DISTRIBUTING = "DISTRIBUTING"
    DISTRIBUTED = "DISTRIBUTED"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"


class MatchStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    WAITING_FOR_LOBBY = "WAITING_FOR_LOBBY"
    LOBBY_READY = "LOBBY_READY"
    CREATING_SERVER = "CREATING_SERVER"
    WAITING_FOR_PLAYERS = "WAITING_FOR_PLAYERS"
    WAITING_TO_START = "WAITING_TO_START"
    LIVE = "LIVE"
    WAITING_TO_CLOSE = "WAITING_TO_CLOSE"
    FINISHED = "FINISHED"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


LOBBY_TERMINAL_STATUSES = (LobbyStatus.EXPIRED, LobbyStatus.CLOSED)

LOBBY_ACTIVE_STATUSES = (
    LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS,
    LobbyStatus.WAITING_FOR_AFK_CHECK,
    LobbyStatus.WAITING_FOR_PICKS,
    LobbyStatus.DISTRIBUTING,
    LobbyStatus.DISTRIBUTED,
)

# Statuses in which players may still join, leave or edit their roles
LOBBY_EDITABLE_STATUSES = (
    LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS,
    LobbyStatus.WAITING_FOR_AFK_CHECK,
)

MATCH_TERMINAL_STATUSES = (MatchStatus.FINISHED, MatchStatus.CLOSED, MatchStatus.FAILED)

MATCH_ACTIVE_STATUSES = tuple(
    s for s in MatchStatus if s not in MATCH_TERMINAL_STATUSES and s != MatchStatus.UNKNOWN
)


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str
    guard: Optional[Callable] = None


def _to_all(states, to_state, action: str) -> List[Transition]:
    return [Transition(s, to_state, action) for s in states]


class StateMachine:
    """Table driven state machine shared by lobbies and matches."""

    STATES = None
    INITIAL_STATE = None
    TRANSITIONS: List[Transition] = []

    def __init__(self, initial_state=None):
        self._state = initial_state if initial_state is not None else self.INITIAL_STATE
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return [t.action for t in self.TRANSITIONS if t.from_state == self._state]

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def transition(self, action: str, guard_context: dict = None):
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "StateMachine":
        try:
            state = cls.STATES(state_str)
        except ValueError:
            state = cls.STATES.UNKNOWN
        return cls(initial_state=state)


class LobbyStateMachine(StateMachine):
    STATES = LobbyStatus
    INITIAL_STATE = LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS

    TRANSITIONS = [
        Transition(LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS, LobbyStatus.WAITING_FOR_AFK_CHECK, "afk_check"),
        Transition(LobbyStatus.WAITING_FOR_AFK_CHECK, LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS, "revert"),
        Transition(LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS, LobbyStatus.WAITING_FOR_PICKS, "start_picks"),
        Transition(LobbyStatus.WAITING_FOR_AFK_CHECK, LobbyStatus.WAITING_FOR_PICKS, "start_picks"),
        Transition(LobbyStatus.WAITING_FOR_REQUIRED_PLAYERS, LobbyStatus.DISTRIBUTING, "distribute"),
        Transition(LobbyStatus.WAITING_FOR_AFK_CHECK, LobbyStatus.DISTRIBUTING, "distribute"),
        Transition(LobbyStatus.WAITING_FOR_PICKS, LobbyStatus.DISTRIBUTING, "distribute"),
        Transition(LobbyStatus.DISTRIBUTING, LobbyStatus.DISTRIBUTED, "distributed"),
    ] + _to_all(LOBBY_ACTIVE_STATUSES, LobbyStatus.EXPIRED, "expire") \
      + _to_all(LOBBY_ACTIVE_STATUSES, LobbyStatus.CLOSED, "close")

    @property
    def is_terminal(self) -> bool:
        return self._state in LOBBY_TERMINAL_STATUSES


class MatchStateMachine(StateMachine):
    STATES = MatchStatus
    INITIAL_STATE = MatchStatus.WAITING_FOR_LOBBY

    TRANSITIONS = [
        Transition(MatchStatus.WAITING_FOR_LOBBY, MatchStatus.LOBBY_READY, "lobby_ready"),
        Transition(MatchStatus.LOBBY_READY, MatchStatus.CREATING_SERVER, "create_server"),
        Transition(MatchStatus.LOBBY_READY, MatchStatus.LIVE, "go_live"),
        Transition(MatchStatus.CREATING_SERVER, MatchStatus.WAITING_FOR_PLAYERS, "server_ready"),
        Transition(MatchStatus.WAITING_FOR_PLAYERS, MatchStatus.WAITING_TO_START, "players_joined"),
        Transition(MatchStatus.WAITING_TO_START, MatchStatus.LIVE, "go_live"),
        Transition(MatchStatus.LIVE, MatchStatus.WAITING_TO_CLOSE, "end"),
        Transition(MatchStatus.CREATING_SERVER, MatchStatus.FAILED, "fail"),
        Transition(MatchStatus.LOBBY_READY, MatchStatus.FAILED, "fail"),
    ] + _to_all(
        (
            MatchStatus.WAITING_FOR_PLAYERS,
            MatchStatus.WAITING_TO_START,
            MatchStatus.LIVE,
            MatchStatus.WAITING_TO_CLOSE,
        ),
        MatchStatus.FINISHED,
        "finish",
    ) + _to_all(MATCH_ACTIVE_STATUSES, MatchStatus.CLOSED, "close")

    @property
    def is_terminal(self) -> bool:
        return self._state in MATCH_TERMINAL_STATUSES
