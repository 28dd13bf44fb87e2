from __future__ import annotations

from dataclasses import dataclass

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S


class StatadepsError(RuntimeError):
    pass


class StatadepsConnectionError(StatadepsError):
    pass


@dataclass(frozen=True)
class StatadepsHTTPError(StatadepsError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class FetchClient:
    """
    Thin httpx wrapper used to pull `.pkg` descriptions and package files from repositories.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        headers = {"User-Agent": f"statadeps/{__version__}"}
        headers.update(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, headers=headers)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "FetchClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get(self, url: str) -> httpx.Response:
        try:
            resp = self._http.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise StatadepsConnectionError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise StatadepsHTTPError(resp.status_code, resp.text)
        return resp

    def get_bytes(self, url: str) -> bytes:
        return self.get(url).content

    def get_text(self, url: str) -> str:
        return self.get(url).text
