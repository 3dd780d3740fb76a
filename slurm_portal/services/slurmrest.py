"""Client for the slurmrestd REST API."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class SlurmAPIError(Exception):
    """Raised when slurmrestd cannot be reached or answers with an error.

    ``status_code`` is None when the request never got a response.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: bytes = b"",
        content_type: str = "application/json",
    ):
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        super().__init__(message)


class SlurmRestClient:
    """Thin wrapper issuing requests to slurmrestd on behalf of a user."""

    def __init__(
        self,
        base_url: str,
        username: str,
        token: str,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "X-SLURM-USER-NAME": username,
                "X-SLURM-USER-TOKEN": token,
                "Accept": "application/json",
            }
        )

    def request(self, method: str, path: str, json: Any = None) -> requests.Response:
        """
        Send a request and return the raw response, whatever its status.

        Raises SlurmAPIError if slurmrestd is unreachable.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            return self.session.request(method, url, json=json, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Request to slurmrestd failed: %s %s: %s", method, url, e)
            raise SlurmAPIError(f"request to slurm failed: {e}") from e

    def get_json(self, path: str) -> Dict[str, Any]:
        """GET ``path`` and decode the JSON body; non-200 raises SlurmAPIError."""
        resp = self.request("GET", path)
        if resp.status_code != 200:
            raise SlurmAPIError(
                f"slurm api returned status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.content,
                content_type=resp.headers.get("Content-Type", "application/json"),
            )
        try:
            return resp.json()
        except ValueError as e:
            logger.error("Failed to unmarshal JSON for %s. Raw data: %s", path, resp.text)
            raise SlurmAPIError(f"failed to unmarshal json: {e}", status_code=resp.status_code) from e

    def get_nodes(self) -> Dict[str, Any]:
        return self.get_json("nodes")

    def get_jobs(self) -> Dict[str, Any]:
        return self.get_json("jobs")

    def get_job(self, job_id: str) -> requests.Response:
        return self.request("GET", f"job/{job_id}")

    def cancel_job(self, job_id: str) -> requests.Response:
        return self.request("DELETE", f"job/{job_id}")

    def submit_job(self, payload: Any) -> requests.Response:
        return self.request("POST", "job/submit", json=payload)

    def allocate_job(self, payload: Any) -> requests.Response:
        return self.request("POST", "job/allocate", json=payload)
