"""HTTP relay transport for DBack.

For hosts without shell access, a small agent on the server performs the
dump/restore itself and exposes it over HTTP:

- ``GET  {base_url}/export`` returns the compressed dump as the body.
- ``POST {base_url}/import`` accepts a compressed dump as the body.

Both requests carry the shared secret in the ``X-DBACK-KEY`` header.
"""

from __future__ import annotations

import logging
from typing import BinaryIO

import requests

from dback.errors import ConnectionError, RelayError
from dback.models import ConnectionProfile

logger = logging.getLogger(__name__)

KEY_HEADER = "X-DBACK-KEY"
DEFAULT_TIMEOUT = 30.0  # seconds to connect / between bytes
_ERROR_BODY_LIMIT = 4096


class RelayClient:
    """Streams dumps to and from a relay agent."""

    def __init__(
        self,
        base_url: str,
        key: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._key = key
        self.timeout = timeout
        self._session = session or requests.Session()
        self._response: requests.Response | None = None

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs) -> "RelayClient":
        return cls(profile.relay_url, profile.relay_key, **kwargs)

    @property
    def host(self) -> str:
        return self.base_url

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {KEY_HEADER: self._key}
        headers.update(extra)
        return headers

    def _check(self, response: requests.Response, action: str) -> None:
        if response.status_code != 200:
            body = response.text[:_ERROR_BODY_LIMIT]
            response.close()
            raise RelayError(f"Relay {action} failed", response.status_code, body)

    def open_export(self) -> tuple[BinaryIO, int | None]:
        """Start an export and return ``(body_stream, content_length)``.

        The body stream is the raw, undecoded response so the bytes on disk
        are exactly what the agent produced.

        Raises:
            ConnectionError: Network failure or timeout.
            RelayError: Non-200 response.
        """
        url = f"{self.base_url}/export"
        logger.info("Requesting relay export from %s", url)
        try:
            # identity: the body is already compressed and is saved verbatim.
            response = self._session.get(
                url,
                headers=self._headers(**{"Accept-Encoding": "identity"}),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionError(f"Could not reach relay at {url}: {exc}") from exc
        self._check(response, "export")
        self._response = response
        length = response.headers.get("Content-Length")
        response.raw.decode_content = False
        return response.raw, int(length) if length and length.isdigit() else None

    def upload(self, body, size: int) -> str:
        """POST *body* (a readable stream of *size* bytes) to the import endpoint.

        Returns the response text on success.

        Raises:
            ConnectionError: Network failure or timeout.
            RelayError: Non-200 response.
        """
        url = f"{self.base_url}/import"
        logger.info("Uploading %d bytes to relay %s", size, url)
        headers = self._headers(**{
            "Content-Type": "application/gzip",
            "Content-Length": str(size),
        })
        try:
            response = self._session.post(
                url,
                data=body if size > 0 else b"",
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionError(f"Relay upload to {url} failed: {exc}") from exc
        self._check(response, "import")
        return response.text

    def close(self) -> None:
        """Abort any open export response and close the HTTP session."""
        response, self._response = self._response, None
        if response is not None:
            response.close()
        self._session.close()
