from __future__ import annotations

import calendar
import datetime as dt
import json
import urllib.parse
from typing import Any, Callable, Optional

from finledger.core.net import HttpResponse, http_get, split_userinfo
from finledger.db.models import ProviderConnection
from finledger.importers.adapters import CredentialsError, ProviderClient, ProviderDataError


def _epoch(d: dt.date) -> int:
    return calendar.timegm(d.timetuple())


class SimplefinClient(ProviderClient):
    """GET {access_url}/accounts for the sync window; the access URL carries Basic auth."""

    def __init__(self, *, get: Callable[..., HttpResponse] = http_get):
        self._get = get

    def fetch_snapshot(
        self,
        credentials: dict[str, str],
        *,
        start_date: Optional[dt.date],
        end_date: Optional[dt.date],
    ) -> dict[str, Any]:
        access_url = (credentials.get("access_url") or "").strip().rstrip("/")
        if not access_url:
            raise CredentialsError("SimpleFIN access_url is empty.")
        base, auth = split_userinfo(access_url)
        params: dict[str, Any] = {}
        if start_date is not None:
            params["start-date"] = _epoch(start_date)
        if end_date is not None:
            params["end-date"] = _epoch(end_date + dt.timedelta(days=1))
        url = f"{base}/accounts"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        resp = self._get(url, headers={"Authorization": auth} if auth else None, timeout_s=60.0)
        try:
            data = json.loads(resp.content.decode("utf-8", errors="replace") or "{}")
        except ValueError as e:
            raise ProviderDataError("SimpleFIN response was not JSON.") from e
        if not isinstance(data, dict):
            raise ProviderDataError("SimpleFIN response was not a JSON object.")
        return data


def simplefin_client_factory(connection: ProviderConnection) -> SimplefinClient:
    return SimplefinClient()
