from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .config import ConfigStore

log = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
OK_SENTINEL: dict[str, Any] = {"ok": True}


class ErrorKind(enum.Enum):
    UNAUTHORIZED = "unauthorized"
    PAYMENT_REQUIRED = "payment_required"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class TerminalMarketError(RuntimeError):
    kind = ErrorKind.UNKNOWN


class NetworkError(TerminalMarketError):
    kind = ErrorKind.NETWORK


class ValidationError(TerminalMarketError):
    kind = ErrorKind.VALIDATION


class NotFoundError(TerminalMarketError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, what: str) -> None:
        super().__init__(f"{what} not found")
        self.what = what


@dataclass(eq=False)
class TerminalMarketHTTPError(TerminalMarketError):
    method: str
    url: str
    status_code: int
    reason: str = ""
    body: str = ""
    kind: ErrorKind = field(init=False)

    def __post_init__(self) -> None:
        super().__init__(str(self))
        if self.status_code == 401:
            self.kind = ErrorKind.UNAUTHORIZED
        elif self.status_code == 402:
            self.kind = ErrorKind.PAYMENT_REQUIRED
        elif self.status_code == 404:
            self.kind = ErrorKind.NOT_FOUND
        else:
            self.kind = ErrorKind.UNKNOWN

    def __str__(self) -> str:
        msg = f"{self.method} {self.url} failed: {self.status_code} {self.reason}".rstrip()
        if self.body:
            msg += f" — {self.body}"
        return msg


def join_url(base: str, path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    if not base:
        return path
    base = base[:-1] if base.endswith("/") else base
    path = path[1:] if path.startswith("/") else path
    return f"{base}/{path}"


def _is_json(resp: httpx.Response) -> bool:
    return "application/json" in resp.headers.get("content-type", "")


class TerminalMarketClient:
    """
    The one place outbound calls go through.

    Carries the stored session cookie and CSRF token on every request and
    refreshes the stored cookie from any ``Set-Cookie`` the server sends back,
    whatever the response status. Non-2xx responses raise
    :class:`TerminalMarketHTTPError`. Nothing is retried.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        api_base: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self._api_base_override = api_base
        self.timeout_s = store.timeout_s if timeout_s is None else timeout_s
        try:
            self._cookie_name_re = re.compile(store.session_cookie_pattern)
        except re.error:
            self._cookie_name_re = re.compile(re.escape(store.session_cookie_pattern))
        self._http = httpx.Client(timeout=self.timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "TerminalMarketClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def api_base(self) -> str:
        return self._api_base_override or self.store.api_base

    def url_for(self, path: str) -> str:
        return join_url(self.api_base, path)

    def _headers(self, method: str) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        cookie = self.store.session_cookie
        if cookie:
            headers["Cookie"] = cookie
        csrf = self.store.csrf_token
        if csrf and method not in SAFE_METHODS:
            headers["x-csrf-token"] = csrf
        return headers

    def _capture_session_cookie(self, resp: httpx.Response) -> None:
        for raw in resp.headers.get_list("set-cookie"):
            pair = raw.split(";", 1)[0].strip()
            name, sep, _ = pair.partition("=")
            if sep and self._cookie_name_re.fullmatch(name.strip()):
                log.debug("session cookie refreshed from %s", name.strip())
                self.store.session_cookie = pair
        # Only the stored cookie is ever sent.
        self._http.cookies.clear()

    def _raise_for_status(self, method: str, resp: httpx.Response, body: str) -> None:
        if 200 <= resp.status_code < 300:
            return
        raise TerminalMarketHTTPError(
            method=method,
            url=str(resp.request.url),
            status_code=resp.status_code,
            reason=resp.reason_phrase,
            body=body.strip(),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        method = method.upper()
        url = self.url_for(path)
        if params:
            params = {k: v for k, v in params.items() if v is not None and v != ""}
        try:
            resp = self._http.request(
                method,
                url,
                params=params or None,
                json=json_body,
                headers=self._headers(method),
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}") from e

        log.debug("%s %s -> %s", method, resp.request.url, resp.status_code)
        self._capture_session_cookie(resp)
        self._raise_for_status(method, resp, resp.text)

        if _is_json(resp) and resp.content.strip():
            try:
                return resp.json()
            except ValueError as e:
                raise TerminalMarketError(f"{method} {url} returned invalid JSON: {e}") from e
        return dict(OK_SENTINEL)

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Any | None = None) -> Any:
        return self.request("POST", path, json_body={} if body is None else body)

    def patch(self, path: str, body: Any | None = None) -> Any:
        return self.request("PATCH", path, json_body={} if body is None else body)

    def put(self, path: str, body: Any | None = None) -> Any:
        return self.request("PUT", path, json_body={} if body is None else body)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)

    def fetch_csrf_token(self) -> str | None:
        data = self.get("/auth/csrf-token")
        token = None
        if isinstance(data, dict):
            token = data.get("csrfToken") or data.get("token")
        if isinstance(token, str) and token:
            self.store.csrf_token = token
            return token
        return None

    def advisory(self, method: str, path: str, body: Any | None = None) -> Any | None:
        """
        Fire a call whose outcome must not affect the command (tracking,
        attribution). Failures are logged at debug level and return ``None``.
        """
        try:
            if method.upper() in SAFE_METHODS:
                return self.request(method, path)
            return self.request(method, path, json_body={} if body is None else body)
        except TerminalMarketError as e:
            log.debug("advisory %s %s ignored: %s", method.upper(), path, e)
            return None

    def download(self, path: str, dest: Path) -> int:
        """Stream a raw (non-JSON) GET into ``dest``; returns bytes written."""
        url = self.url_for(path)
        written = 0
        part = dest.with_name(dest.name + ".part")
        try:
            with self._http.stream("GET", url, headers=self._headers("GET")) as resp:
                self._capture_session_cookie(resp)
                if not 200 <= resp.status_code < 300:
                    resp.read()
                    self._raise_for_status("GET", resp, resp.text)
                dest.parent.mkdir(parents=True, exist_ok=True)
                with part.open("wb") as fh:
                    for chunk in resp.iter_bytes():
                        fh.write(chunk)
                        written += len(chunk)
            part.replace(dest)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}") from e
        finally:
            part.unlink(missing_ok=True)
        log.debug("GET %s -> %s (%d bytes)", url, dest, written)
        return written
