"""PostgREST-style HTTP backend for a hosted relational data service."""

from __future__ import annotations

import os
from collections.abc import Sequence
from typing import Any, cast

from optiq.backends.base import Filter, Order, Row
from optiq.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    Conflict,
    NotFound,
    OptiqError,
    TransportFailure,
)


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _condition(f: Filter) -> str:
    """Render a Filter inside an ``or=(...)`` group."""
    if f.op == "in":
        return f"{f.column}.in.({','.join(_format_value(v) for v in f.value)})"
    return f"{f.column}.{f.op}.{_format_value(f.value)}"


def _filter_param(f: Filter) -> tuple[str, str]:
    """Render a Filter as a PostgREST query parameter."""
    if f.op == "or":
        return "or", "(" + ",".join(_condition(c) for c in f.value) + ")"
    if f.op == "in":
        inner = ",".join(_format_value(v) for v in f.value)
        return f.column, f"in.({inner})"
    return f.column, f"{f.op}.{_format_value(f.value)}"


def _error_for(status: int, body: Any) -> OptiqError:
    """Map an HTTP error response onto the optiq error taxonomy."""
    code = body.get("code") if isinstance(body, dict) else None
    if status == 401:
        return AuthenticationRequired(code=code)
    if status == 403 or code == "42501":
        return AuthorizationDenied(code=code)
    if status == 404 or code == "PGRST116":
        return NotFound(code=code)
    if status == 409 or code == "23505":
        return Conflict(code=code)
    return TransportFailure(code=code or str(status))


class RestBackend:
    """Async HTTP backend speaking the PostgREST dialect."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        access_token: str | None = None,
        schema: str = "public",
        timeout: float = 30.0,
    ) -> None:
        import httpx

        self._httpx = httpx
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
                "Accept-Profile": schema,
                "Content-Profile": schema,
            },
            timeout=timeout,
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> RestBackend:
        """Build from OPTIQ_REST_URL, OPTIQ_API_KEY and OPTIQ_ACCESS_TOKEN."""
        try:
            url = os.environ["OPTIQ_REST_URL"]
            api_key = os.environ["OPTIQ_API_KEY"]
        except KeyError as e:
            raise ValueError(f"Missing environment variable: {e.args[0]}") from e
        kwargs.setdefault("access_token", os.environ.get("OPTIQ_ACCESS_TOKEN"))
        return cls(url, api_key, **kwargs)

    def set_access_token(self, token: str | None) -> None:
        """Switch the bearer token after sign in or sign out."""
        self._client.headers["Authorization"] = f"Bearer {token or self._api_key}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send one request; raise the mapped error on failure."""
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except self._httpx.TransportError as e:
            raise TransportFailure(code=type(e).__name__) from e

        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise _error_for(response.status_code, body)

        if method == "HEAD":
            return response
        if not response.content:
            return None
        return response.json()

    async def _rows(self, method: str, path: str, **kwargs: Any) -> list[Row]:
        return cast(list[Row], await self._request(method, path, **kwargs) or [])

    async def select(
        self,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        columns: str = "*",
        order: Order | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        params = [("select", columns), *(_filter_param(f) for f in filters)]
        if order is not None:
            params.append(("order", f"{order.column}.{'asc' if order.ascending else 'desc'}"))
        if offset is not None:
            params.append(("offset", str(offset)))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._rows("GET", f"/rest/v1/{table}", params=params)

    async def insert(self, table: str, rows: Row | Sequence[Row]) -> list[Row]:
        return await self._rows(
            "POST",
            f"/rest/v1/{table}",
            json=rows if isinstance(rows, dict) else list(rows),
            headers={"Prefer": "return=representation"},
        )

    async def update(
        self, table: str, values: Row, *, filters: Sequence[Filter]
    ) -> list[Row]:
        return await self._rows(
            "PATCH",
            f"/rest/v1/{table}",
            params=[_filter_param(f) for f in filters],
            json=values,
            headers={"Prefer": "return=representation"},
        )

    async def delete(self, table: str, *, filters: Sequence[Filter]) -> list[Row]:
        return await self._rows(
            "DELETE",
            f"/rest/v1/{table}",
            params=[_filter_param(f) for f in filters],
            headers={"Prefer": "return=representation"},
        )

    async def upsert(
        self,
        table: str,
        rows: Row | Sequence[Row],
        *,
        on_conflict: Sequence[str],
    ) -> list[Row]:
        return await self._rows(
            "POST",
            f"/rest/v1/{table}",
            params=[("on_conflict", ",".join(on_conflict))],
            json=rows if isinstance(rows, dict) else list(rows),
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )

    async def rpc(self, function: str, params: Row) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{function}", json=params)

    async def count(self, table: str, *, filters: Sequence[Filter] = ()) -> int:
        response = await self._request(
            "HEAD",
            f"/rest/v1/{table}",
            params=[("select", "*"), *(_filter_param(f) for f in filters)],
            headers={"Prefer": "count=exact"},
        )
        # Content-Range: 0-24/57 or */0
        content_range = response.headers.get("content-range", "*/0")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
