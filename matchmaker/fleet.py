import logging
from enum import Enum
from typing import List

import requests

from .errors import ProvisioningError

logger = logging.getLogger(__name__)


class ServerStatus(str, Enum):
    INIT = "INIT"
    ALLOCATING = "ALLOCATING"
    WAITING = "WAITING"
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CLOSING = "CLOSING"
    DEALLOCATING = "DEALLOCATING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class LighthouseClient:
    """
    HTTP client for the Lighthouse fleet manager, which allocates and
    deallocates game servers on behalf of matches.
    """

    def __init__(self, host: str, client_secret: str, public_url: str, timeout: float = 10):
        self.host = host.rstrip('/')
        self.client_secret = client_secret
        self.public_url = public_url.rstrip('/')
        self.timeout = timeout

    @property
    def callback_url(self) -> str:
        return f"{self.public_url}/api/v1/matches/server/callback"

    def _headers(self) -> dict:
        return {'Authorization': f"Bearer {self.client_secret}"}

    def get_region_providers(self, region: str) -> List[str]:
        """Providers able to host a server in ``region``, preferred first."""
        try:
            resp = requests.get(
                f"{self.host}/api/v1/providers/region/{region}",
                headers=self._headers(),
                timeout=self.timeout
            )
            resp.raise_for_status()
            return resp.json()
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Failed to list providers for region {region}: {e}")

    def create_server(self, game: str, region: str, provider: str, data: dict = None) -> dict:
        payload = {
            'game': game,
            'region': region,
            'provider': provider,
            'data': data or {},
            'callbackUrl': self.callback_url,
        }
        try:
            resp = requests.post(
                f"{self.host}/api/v1/servers",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout
            )
            resp.raise_for_status()
            server = resp.json()
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Failed to create {game} server in {region} on {provider}: {e}")

        if not isinstance(server, dict) or not (server.get('_id') or server.get('id')):
            raise ProvisioningError(f"Lighthouse answered without a server id for {game} in {region}")
        logger.info(f"Requested server {server.get('_id')} ({game}, {region}, {provider})")
        return server

    def delete_server(self, server_id: str):
        try:
            resp = requests.delete(
                f"{self.host}/api/v1/servers/{server_id}",
                headers=self._headers(),
                timeout=self.timeout
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(f"Failed to delete server {server_id}: {e}")
        logger.info(f"Requested teardown of server {server_id}")
