from __future__ import annotations

from typing import Any

import requests

REST_PATH = "/rest/v1"


class PostgrestError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class PostgrestClient:
    """Minimal client for a hosted PostgREST table API.

    Filters are passed as ``{"column": value}`` and sent as ``eq.`` operators;
    anything fancier is out of scope.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            }
        )

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        params = {"select": columns, **_eq_filters(filters)}
        if order:
            params["order"] = order
        data = self._request("GET", f"{REST_PATH}/{table}", params=params)
        return data or []

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        data = self._request(
            "POST",
            f"{REST_PATH}/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        return _single(data, table)

    def update(self, table: str, filters: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
        data = self._request(
            "PATCH",
            f"{REST_PATH}/{table}",
            params=_eq_filters(filters),
            json=fields,
            headers={"Prefer": "return=representation"},
        )
        return _single(data, table)

    def delete(self, table: str, filters: dict[str, Any]) -> int:
        data = self._request(
            "DELETE",
            f"{REST_PATH}/{table}",
            params=_eq_filters(filters),
            headers={"Prefer": "return=representation"},
        )
        return len(data or [])

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        headers: dict[str, str] | None = None,
    ):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise PostgrestError(f"Request to {url} failed: {exc}") from exc
        if response.status_code >= 400:
            code, message = _error_details(response)
            raise PostgrestError(message, status_code=response.status_code, code=code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise PostgrestError(
                f"Invalid JSON from {url}: {exc}", status_code=response.status_code, code="invalid_response"
            ) from exc


def _eq_filters(filters: dict[str, Any] | None) -> dict[str, str]:
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


def _single(data: Any, table: str) -> dict[str, Any]:
    if not data:
        # An update that matched nothing (or was hidden by row-level security).
        raise PostgrestError(f"No {table} row returned.", status_code=406, code="PGRST116")
    if isinstance(data, list):
        return data[0]
    return data


def _error_details(response) -> tuple[str | None, str]:
    try:
        payload = response.json()
    except ValueError:
        return None, f"HTTP {response.status_code}: {response.text}"
    if not isinstance(payload, dict):
        return None, f"HTTP {response.status_code}: {response.text}"
    message = payload.get("message") or payload.get("msg") or response.text
    return payload.get("code"), str(message)
