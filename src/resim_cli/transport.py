"""HTTP and GraphQL access to the platform.

Retries for 429, 5xx and network errors are done by a ``urllib3`` ``Retry``
policy mounted on the session. The token refresh on a 401 and the per-call
time budget live here; callers get back decoded JSON or one of the typed
errors from :mod:`resim_cli.models`.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Protocol
from urllib.parse import urljoin

import requests
import urllib3
from requests.adapters import HTTPAdapter

from resim_cli.models import AuthError, RemoteError, TransportError

_log = logging.getLogger("resim.transport")

PAGE_SIZE = 100
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_ATTEMPTS = 5
BUDGET_SEC = 60.0
_DOWNLOAD_CHUNK_BYTES = 1 << 20


class TokenSource(Protocol):
    def token(self) -> str: ...

    def refresh(self) -> str: ...


class BoundedRetry(urllib3.util.Retry):
    """``Retry`` whose server-requested waits never exceed ``backoff_max``."""

    def get_retry_after(self, response):
        seconds = super().get_retry_after(response)
        if seconds is None:
            return None
        return min(seconds, self.backoff_max)


def retry_policy(
    *,
    attempts: int = MAX_ATTEMPTS,
    backoff_factor: float = 0.5,
    backoff_max: float = 4.0,
    backoff_jitter: float = 0.5,
) -> BoundedRetry:
    """Retry policy shared by every call: 429, 5xx and network errors.

    Exponential backoff (``backoff_factor * 2**n``, capped at ``backoff_max``)
    plus up to ``backoff_jitter`` seconds of random jitter. ``Retry-After`` is
    honoured on 429 and 503 up to ``backoff_max``. Every method is retried,
    so POSTs are too. With the defaults and an 8 s per-attempt timeout, five
    attempts stay inside the 60 s call budget.
    """
    return BoundedRetry(
        total=max(0, min(attempts, MAX_ATTEMPTS) - 1),
        backoff_factor=backoff_factor,
        backoff_max=backoff_max,
        backoff_jitter=backoff_jitter,
        status_forcelist=sorted(RETRYABLE_STATUS_CODES),
        allowed_methods=None,
        respect_retry_after_header=True,
        raise_on_status=False,
    )


def retrying_session(retry: urllib3.util.Retry | None = None) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry or retry_policy())
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _decode_body(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class Transport:
    """Session wrapper for one platform host. Not thread-safe.

    Args:
      base_url: REST API root, e.g. ``https://api.resim.ai/v1/``.
      tokens: source of bearer tokens; refreshed once on a 401.
      bff_url: GraphQL endpoint used by metrics sync.
      session: defaults to :func:`retrying_session`.
      budget_sec: wall-clock ceiling for one call, retries included.
      request_timeout_sec: per-attempt timeout, further capped by what is left
        of the budget.
    """

    def __init__(
        self,
        base_url: str,
        tokens: TokenSource,
        *,
        bff_url: str | None = None,
        session: requests.Session | None = None,
        budget_sec: float = BUDGET_SEC,
        request_timeout_sec: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.bff_url = bff_url
        self.session = session if session is not None else retrying_session()
        self._tokens = tokens
        self._budget_sec = min(budget_sec, BUDGET_SEC)
        self._request_timeout_sec = request_timeout_sec
        self._clock = clock

    def url_for(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def _timeout(self, action: str, started: float) -> float:
        remaining = self._budget_sec - (self._clock() - started)
        if remaining <= 0:
            _log.warning("transport_budget_exhausted action=%s", action)
            raise TransportError(
                f"{action}: gave up after {self._budget_sec:.0f}s without a response"
            )
        return min(self._request_timeout_sec, remaining)

    def _send_once(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        body: Any,
        authenticated: bool,
        stream: bool,
        timeout: float,
    ) -> requests.Response:
        headers = {"Accept": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._tokens.token()}"
        _log.debug("%s %s", method, url)
        return self.session.request(
            method=method,
            url=url,
            params=dict(params) if params else None,
            json=body,
            headers=headers,
            timeout=timeout,
            stream=stream,
        )

    def _execute(
        self,
        method: str,
        url: str,
        *,
        action: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        authenticated: bool = True,
        stream: bool = False,
    ) -> requests.Response:
        started = self._clock()
        refreshed = False
        while True:
            try:
                response = self._send_once(
                    method,
                    url,
                    params=params,
                    body=body,
                    authenticated=authenticated,
                    stream=stream,
                    timeout=self._timeout(action, started),
                )
            except requests.exceptions.RetryError as exc:
                raise TransportError(f"{action}: retries exhausted: {exc}") from exc
            except (requests.ConnectionError, requests.Timeout) as exc:
                _log.warning(
                    "transport_network_error action=%s error=%s", action, type(exc).__name__
                )
                raise TransportError(
                    f"{action}: network error: {type(exc).__name__}: {exc}"
                ) from exc
            if response.status_code != 401 or not authenticated:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    _log.warning(
                        "transport_retries_exhausted action=%s status=%d",
                        action,
                        response.status_code,
                    )
                return response
            if refreshed:
                raise AuthError(
                    f"{action}: authentication rejected (HTTP 401): {response.text}"
                )
            _log.info("transport_token_refresh action=%s", action)
            self._tokens.refresh()
            refreshed = True

    def request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one REST call and return the decoded JSON body.

        Args:
          method: HTTP verb.
          path: endpoint relative to the API root, e.g. ``projects/<id>``.
          action: phrase used to prefix errors, e.g. ``failed to create batch``.
          params: query parameters.
          body: JSON-serializable request body.

        Raises:
          RemoteError: the platform answered with a non-2xx status.
          TransportError: the platform could not be reached in budget.
          AuthError: a refreshed token was rejected.
        """
        response = self._execute(
            method, self.url_for(path), action=action, params=params, body=body
        )
        if not 200 <= response.status_code < 300:
            raise RemoteError(action, response.status_code, response.text)
        return _decode_body(response)

    def get(self, path: str, *, action: str, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", path, action=action, params=params)

    def post(self, path: str, body: Any = None, *, action: str) -> Any:
        return self.request("POST", path, action=action, body=body)

    def patch(self, path: str, body: Any, *, action: str) -> Any:
        return self.request("PATCH", path, action=action, body=body)

    def put(self, path: str, body: Any = None, *, action: str) -> Any:
        return self.request("PUT", path, action=action, body=body)

    def delete(self, path: str, body: Any = None, *, action: str) -> Any:
        return self.request("DELETE", path, action=action, body=body)

    def get_optional(self, path: str, *, action: str) -> Any | None:
        """GET that maps 404 to ``None`` instead of raising."""
        response = self._execute("GET", self.url_for(path), action=action)
        if response.status_code == 404:
            return None
        if not 200 <= response.status_code < 300:
            raise RemoteError(action, response.status_code, response.text)
        return _decode_body(response)

    def paginate(
        self,
        path: str,
        key: str,
        *,
        action: str,
        params: Mapping[str, Any] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield records from every page of a list endpoint."""
        query: dict[str, Any] = dict(params or {})
        query.setdefault("pageSize", PAGE_SIZE)
        pages = 0
        while True:
            payload = self.get(path, action=action, params=query) or {}
            pages += 1
            for record in payload.get(key) or []:
                yield record
            next_token = payload.get("nextPageToken")
            if not next_token:
                _log.debug("paginate_done path=%s pages=%d", path, pages)
                return
            query["pageToken"] = next_token

    def graphql(self, query: str, variables: Mapping[str, Any], *, action: str) -> Any:
        if not self.bff_url:
            raise TransportError(f"{action}: no GraphQL endpoint configured")
        response = self._execute(
            "POST",
            self.bff_url,
            action=action,
            body={"query": query, "variables": dict(variables)},
        )
        if not 200 <= response.status_code < 300:
            raise RemoteError(action, response.status_code, response.text)
        payload = _decode_body(response) or {}
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            messages = "; ".join(str(item.get("message", item)) for item in errors)
            raise RemoteError(action, response.status_code, messages)
        return payload.get("data") if isinstance(payload, dict) else None

    def download(self, url: str, destination: Path, *, action: str) -> int:
        """Stream a pre-signed URL to *destination*; returns bytes written."""
        response = self._execute(
            "GET", url, action=action, authenticated=False, stream=True
        )
        if not 200 <= response.status_code < 300:
            raise RemoteError(action, response.status_code, response.text)
        destination.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with destination.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=_DOWNLOAD_CHUNK_BYTES):
                if chunk:
                    handle.write(chunk)
                    written += len(chunk)
        return written

