from __future__ import annotations

import base64
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Optional

from finledger.importers.adapters import CredentialsError, ProviderError, RateLimitedError


log = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = frozenset({"bridge.simplefin.org", "beta-bridge.simplefin.org"})


def network_enabled() -> bool:
    v = (os.environ.get("NETWORK_ENABLED") or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def allowed_outbound_hosts() -> set[str]:
    raw = (os.environ.get("ALLOWED_OUTBOUND_HOSTS") or "").strip()
    if raw:
        return {h.strip().lower() for h in raw.split(",") if h.strip()}
    return set(DEFAULT_ALLOWED_HOSTS)


def assert_url_allowed(url: str) -> None:
    u = urllib.parse.urlparse(url)
    if (u.scheme or "").lower() != "https":
        raise ProviderError("Blocked network request: only https:// is allowed.")
    host = (u.hostname or "").lower()
    if not host:
        raise ProviderError("Blocked network request: missing hostname.")
    if host not in allowed_outbound_hosts():
        raise ProviderError(f"Blocked network request: host not allowlisted ({host}).")


def split_userinfo(url: str) -> tuple[str, Optional[str]]:
    """Move user:pass@ out of the URL into a Basic auth header value."""
    u = urllib.parse.urlparse(url)
    if u.username is None:
        return url, None
    netloc = u.hostname or ""
    if u.port:
        netloc = f"{netloc}:{u.port}"
    creds = f"{urllib.parse.unquote(u.username)}:{urllib.parse.unquote(u.password or '')}"
    header = "Basic " + base64.b64encode(creds.encode("utf-8")).decode("ascii")
    return urllib.parse.urlunparse(u._replace(netloc=netloc)), header


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    content: bytes
    content_type: Optional[str] = None


def _backoff(attempt: int, base_s: float) -> None:
    time.sleep(min(8.0, base_s * (2**attempt)))


class _AllowlistRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        assert_url_allowed(str(newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def http_get(
    url: str,
    *,
    headers: Optional[dict[str, str]] = None,
    timeout_s: float = 30.0,
    max_retries: int = 2,
    backoff_s: float = 0.5,
) -> HttpResponse:
    """
    GET with the NETWORK_ENABLED gate, host allowlist and limited retries.

    Errors never include the URL query or credentials.
    """
    if not network_enabled():
        raise ProviderError("Network disabled; set NETWORK_ENABLED=1 to enable live connectors.")
    assert_url_allowed(url)
    host = (urllib.parse.urlparse(url).hostname or "").lower()

    attempt = 0
    last_err: Exception | None = None
    while attempt <= max_retries:
        try:
            opener = urllib.request.build_opener(_AllowlistRedirectHandler())
            req = urllib.request.Request(url, method="GET", headers=headers or {})
            with opener.open(req, timeout=timeout_s) as resp:
                return HttpResponse(
                    status_code=int(getattr(resp, "status", 200)),
                    content=resp.read(),
                    content_type=resp.headers.get("Content-Type"),
                )
        except urllib.error.HTTPError as e:
            last_err = e
            status = int(getattr(e, "code", 0) or 0)
            if status in (401, 403):
                raise CredentialsError(f"HTTP {status} from {host}; credentials rejected.") from e
            if status == 429 or status >= 500:
                if attempt == max_retries and status == 429:
                    raise RateLimitedError(f"HTTP 429 from {host}") from e
                _backoff(attempt, backoff_s)
                attempt += 1
                continue
            raise ProviderError(f"HTTP error status={status} host={host}") from e
        except urllib.error.URLError as e:
            last_err = e
            log.warning("GET %s failed (attempt %s): %s", host, attempt + 1, e.reason)
            _backoff(attempt, backoff_s)
            attempt += 1
    raise ProviderError(
        f"Network request failed after retries: {type(last_err).__name__ if last_err else 'unknown'} host={host}"
    )
