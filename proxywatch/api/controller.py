"""Commands sent to the proxy's external controller API."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import requests


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloseAllResult:
    """Outcome of a terminate-all request; never retried."""
    requested: bool
    ok: bool
    error: Optional[str] = None


class ClashController:
    """Client for the Clash-compatible external controller."""

    def __init__(self, base_url: str, secret: Optional[str] = None, timeout_seconds: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.secret = secret
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.secret:
            return {}
        return {'Authorization': f"Bearer {self.secret}"}

    def close_all_connections(self) -> CloseAllResult:
        """
        Ask the proxy to terminate every connection.

        Failures are logged and reported in the result for the caller to
        surface.
        """
        url = f"{self.base_url}/connections"
        try:
            response = self.session.delete(url, headers=self._headers(), timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to close all connections: {e}")
            return CloseAllResult(requested=True, ok=False, error=str(e))

        logger.info("Requested termination of all connections")
        return CloseAllResult(requested=True, ok=True)
