# ======================================================================
#  File......: immich_client.py
#  Purpose...: Immich REST connector (httpx) with API-key auth and
#              error mapping to Transport / Protocol / Decode errors.
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
#
#  Goals:
#    - One static x-api-key header on every request
#    - Every failure surfaces as a FetchError subclass with a readable message
#    - Control endpoints (pause/resume/retry/cancel) live here too
# ======================================================================

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Tuple

import httpx

from errors import DecodeError, FetchError, InputError, ProtocolError, TransportError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
DEFAULT_TIMEOUT_SEC = 30.0

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")


def validate_name(value: str, what: str) -> str:
    """Queue names / job ids end up in a URL path: reject empty or unsafe values."""
    if not isinstance(value, str) or not value.strip():
        raise InputError(f"{what} must be a non-empty string")
    value = value.strip()
    if not _SAFE_NAME.match(value):
        raise InputError(f"Invalid {what}: {value!r}")
    return value


class ImmichClient:
    """Thin synchronous client over the Immich REST API."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not server_url:
            raise InputError("server_url is required")
        self.server_url = server_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self.server_url,
            headers={
                API_KEY_HEADER: api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout_sec,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    def request(self, method: str, endpoint: str, json_body: Any = None) -> Any:
        """
        Issue one request and return the decoded JSON body (None if empty).

        Raises:
          TransportError on connection problems / timeouts
          ProtocolError on non-2xx statuses
          DecodeError if a non-empty body is not JSON
        """
        logger.debug("%s %s%s", method, self.server_url, endpoint)
        try:
            resp = self._http.request(method, endpoint, json=json_body)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {endpoint} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

        if not resp.is_success:
            logger.debug("HTTP %s from %s: %s", resp.status_code, endpoint, resp.text[:500])
            raise ProtocolError(resp.status_code, resp.text)

        if not resp.content or not resp.content.strip():
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"Failed to decode response from {endpoint}: {e}") from e

    # ------------------------------------------------------------------
    # Server
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Out-of-band connectivity check. Not part of the poll cycle."""
        data = self.request("GET", "/api/server/ping")
        if not isinstance(data, dict) or "res" not in data:
            raise DecodeError("Unexpected ping response")
        return str(data["res"]).lower() == "pong"

    def server_version(self) -> str:
        data = self.request("GET", "/api/server/version")
        try:
            return f"{int(data['major'])}.{int(data['minor'])}.{int(data['patch'])}"
        except (TypeError, KeyError, ValueError) as e:
            raise DecodeError(f"Unexpected version response: {data!r}") from e

    def test_connection(self) -> Tuple[bool, str]:
        """Settings-screen style check: never raises, returns (ok, message)."""
        try:
            self.ping()
        except FetchError as e:
            logger.warning("Connection test to %s failed: %s", self.server_url, e)
            return False, str(e)
        try:
            version = self.server_version()
        except FetchError:
            return True, "Connected"
        return True, f"Connected (server {version})"

    # ------------------------------------------------------------------
    # Jobs / queues
    # ------------------------------------------------------------------

    def get_jobs(self) -> Any:
        return self.request("GET", "/api/jobs")

    def pause_queue(self, queue_name: str) -> None:
        queue_name = validate_name(queue_name, "queue name")
        self.request("POST", f"/api/jobs/{queue_name}/pause")

    def resume_queue(self, queue_name: str) -> None:
        queue_name = validate_name(queue_name, "queue name")
        self.request("POST", f"/api/jobs/{queue_name}/resume")

    def retry_job(self, job_id: str) -> None:
        job_id = validate_name(job_id, "job id")
        self.request("POST", f"/api/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> None:
        job_id = validate_name(job_id, "job id")
        self.request("DELETE", f"/api/jobs/{job_id}/cancel")

    def retry_failed(self, queue_name: Optional[str] = None) -> None:
        if queue_name is None:
            self.request("POST", "/api/jobs/retry-failed")
        else:
            queue_name = validate_name(queue_name, "queue name")
            self.request("POST", f"/api/jobs/{queue_name}/retry-failed")

    def clear_completed(self) -> None:
        self.request("DELETE", "/api/jobs/completed")
