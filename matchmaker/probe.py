"""
Probes for a running game server.

``GameServerProbe`` asks the game server itself how many players are
connected (Source A2S query). ``SidecarClient`` talks to the companion HTTP
process that runs next to every server and reports match progress, logs and
demos, and manages the player whitelist.
"""
import logging
from typing import Optional

import a2s
import requests

from .errors import ProbeError
from .players import whitelist_entry

logger = logging.getLogger(__name__)

# Match states reported by the sidecar
SIDECAR_IN_PROGRESS = ('LIVE', 'IN_PROGRESS', 'RUNNING')
SIDECAR_ENDED = ('ENDED', 'FINISHED', 'COMPLETED')


class GameServerProbe:

    def __init__(self, timeout: float = 5):
        self.timeout = timeout

    def query_players(self, host: str, port: int, game: str = None) -> int:
        try:
            info = a2s.info((host, int(port)), timeout=self.timeout)
        except (OSError, a2s.BrokenMessageError, a2s.BufferExhaustedError) as e:
            raise ProbeError(f"Player query to {host}:{port} ({game}) failed: {e}")
        return info.player_count

    def sidecar_for(self, server: dict) -> "SidecarClient":
        return SidecarClient.for_server(server, timeout=self.timeout)


class SidecarClient:

    def __init__(self, ip: str, address: str, password: str, timeout: float = 5):
        address = str(address or '')
        if address and not address.startswith(':'):
            address = f":{address}"
        self.base_url = f"http://{ip}{address}"
        self.password = password
        self.timeout = timeout

    @classmethod
    def for_server(cls, server: dict, timeout: float = 5) -> "SidecarClient":
        data = server.get('data') or {}
        return cls(
            server.get('ip'),
            data.get('hatchAddress'),
            data.get('hatchPassword'),
            timeout=timeout
        )

    def _request(self, method: str, path: str, json: dict = None):
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                params={'password': self.password},
                json=json,
                timeout=self.timeout
            )
            resp.raise_for_status()
            if not resp.content:
                return None
            return resp.json()
        except requests.exceptions.RequestException as e:
            raise ProbeError(f"Sidecar {method} {path} at {self.base_url} failed: {e}")

    def get_status(self) -> dict:
        """Returns ``{"matches": [{"status", "logUrl", "demoUrl", "score"}, ...]}``."""
        return self._request('GET', '/status') or {}

    def kick_all(self):
        return self._request('GET', '/common/kickall')

    def enable_whitelist(self):
        return self._request('POST', '/whitelist/enable')

    def add_whitelist_player(self, player: dict):
        return self._request('POST', '/whitelist/player/', json=whitelist_entry(player))

    def remove_whitelist_player(self, player: dict):
        return self._request('DELETE', f"/whitelist/player/{player.get('steam')}")


def latest_match(status: dict) -> Optional[dict]:
    matches = (status or {}).get('matches') or []
    return matches[-1] if matches else None


def is_in_progress(status: dict) -> bool:
    match = latest_match(status)
    return match is not None and str(match.get('status', '')).upper() in SIDECAR_IN_PROGRESS


def has_ended(status: dict) -> bool:
    match = latest_match(status)
    return match is not None and str(match.get('status', '')).upper() in SIDECAR_ENDED


def extract_result(status: dict) -> Optional[dict]:
    """Result of the last finished match, once its log or demo is available."""
    match = latest_match(status)
    if match is None or not (match.get('logUrl') or match.get('demoUrl')):
        return None
    return {
        'log_url': match.get('logUrl'),
        'demo_url': match.get('demoUrl'),
        'score': match.get('score'),
    }
