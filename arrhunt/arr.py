import logging
from typing import Any
from urllib.parse import urlparse

import requests

from .config import ArrConfig


def as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes", "on"):
            return True
        if v in ("false", "0", "no", "off"):
            return False
    return None


def safe_int(value: Any) -> int:
    try:
        return int(str(value if value is not None else "").strip())
    except (TypeError, ValueError):
        return 0


class ArrRequestError(RuntimeError):
    def __init__(
        self,
        app: str,
        base_url: str,
        method: str,
        path: str,
        message: str,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.app = app
        self.base_url = base_url
        self.method = method
        self.path = path
        self.message = message
        self.hint = hint or ""

    def __str__(self) -> str:
        loc = ""
        try:
            u = urlparse(self.base_url)
            if u.hostname:
                loc = u.hostname
                if u.port:
                    loc = f"{loc}:{u.port}"
        except ValueError:
            loc = ""
        where = loc or self.base_url
        extra = f" Hint: {self.hint}" if self.hint else ""
        return f"{self.app} request failed ({where} {self.method} {self.path}): {self.message}.{extra}"


class ArrClient:
    """Thin JSON client for one *arr instance. Counts every request it makes."""

    def __init__(
        self,
        name: str,
        config: ArrConfig,
        timeout_seconds: int,
        verify_ssl: bool,
        logger: logging.Logger,
    ) -> None:
        self.name = name
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.verify_ssl = verify_ssl
        self.logger = logger
        self.calls_made = 0

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | list[Any]:
        base = self.config.url.rstrip("/")
        url = f"{base}{path}"
        headers = {"X-Api-Key": self.config.api_key}
        self.calls_made += 1
        try:
            resp = requests.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=self.timeout_seconds,
                verify=self.verify_ssl,
            )
        except requests.exceptions.ConnectionError as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message="Cannot connect (connection refused/unreachable)",
                hint="Check the instance URL/port and that the service is running.",
            ) from exc
        except requests.exceptions.Timeout as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=f"Request timed out after {self.timeout_seconds}s",
                hint="Increase request_timeout_seconds or check network latency.",
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=exc.__class__.__name__,
            ) from exc

        try:
            resp.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            snippet = (resp.text or "").strip().replace("\n", " ")
            if len(snippet) > 200:
                snippet = snippet[:200] + "..."
            msg = f"HTTP {resp.status_code}"
            if snippet:
                msg = f"{msg} ({snippet})"
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=msg,
                hint="Check API key permissions and that the endpoint exists for your Arr version.",
            ) from exc

        if not resp.text:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message="Invalid JSON response",
            ) from exc

    def get_records(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """GET a paged endpoint and return its records (or the bare list)."""
        payload = self.request("GET", path, params=params)
        if isinstance(payload, dict):
            chunk = payload.get("records") or []
        elif isinstance(payload, list):
            chunk = payload
        else:
            chunk = []
        return [r for r in chunk if isinstance(r, dict)]

    def get_total_records(self, path: str) -> int:
        payload = self.request("GET", path, params={"page": 1, "pageSize": 1})
        if isinstance(payload, dict):
            return safe_int(payload.get("totalRecords"))
        if isinstance(payload, list):
            return len(payload)
        return 0

    def command(self, body: dict[str, Any]) -> dict[str, Any] | list[Any]:
        return self.request("POST", f"{self.api_prefix}/command", json_data=body)

    @property
    def api_prefix(self) -> str:
        # Sonarr/Radarr speak v3, Lidarr/Readarr v1.
        return "/api/v1" if self.name in ("lidarr", "readarr") else "/api/v3"
