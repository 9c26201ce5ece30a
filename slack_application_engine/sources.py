"""Response sources the engine polls for new form submissions."""

from __future__ import annotations

import json
from typing import Any, Callable, List, Protocol, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from slack_application_engine.models import ResponseSourceError

DEFAULT_TIMEOUT_SEC = 15
DEFAULT_COLUMN_RANGE = "A:ZZ"


class ResponseSource(Protocol):
    def read_all_rows(self) -> List[List[str]]:
        """Return every row of the source, header row first."""
        ...


def _build_values_get_url(spreadsheet_id: str, range_name: str, api_key: str) -> str:
    encoded_sheet = quote(spreadsheet_id, safe="")
    encoded_range = quote(range_name, safe="!:$")
    query = urlencode({"key": api_key, "majorDimension": "ROWS"})
    return f"https://sheets.googleapis.com/v4/spreadsheets/{encoded_sheet}/values/{encoded_range}?{query}"


def _fetch_json(url: str, timeout_sec: int) -> dict[str, Any]:
    request = Request(url, headers={"Accept": "application/json"}, method="GET")
    with urlopen(request, timeout=timeout_sec) as response:
        body = response.read().decode("utf-8")
    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("Google Sheets response must be a JSON object.")
    return payload


def _normalize_rows(values: Any) -> List[List[str]]:
    if not isinstance(values, list):
        return []
    rows: List[List[str]] = []
    for row in values:
        if not isinstance(row, list):
            rows.append([])
            continue
        rows.append(["" if cell is None else str(cell) for cell in row])
    return rows


class GoogleSheetsResponseSource:
    """Read a Google Forms response sheet through the Sheets ``values.get`` API."""

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        api_key: str,
        sheet_name: str = "Form Responses 1",
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
        fetch_json: Callable[[str, int], dict[str, Any]] = _fetch_json,
    ) -> None:
        if not spreadsheet_id or not api_key:
            raise ValueError("A spreadsheet id and an API key are required.")
        self._spreadsheet_id = spreadsheet_id
        self._api_key = api_key
        self._sheet_name = sheet_name
        self._timeout_sec = timeout_sec
        self._fetch_json = fetch_json

    @property
    def range_name(self) -> str:
        return f"{self._sheet_name}!{DEFAULT_COLUMN_RANGE}"

    def read_all_rows(self) -> List[List[str]]:
        url = _build_values_get_url(self._spreadsheet_id, self.range_name, self._api_key)
        try:
            payload = self._fetch_json(url, self._timeout_sec)
        except (HTTPError, URLError, TimeoutError, ValueError) as exc:
            raise ResponseSourceError(f"Failed reading {self.range_name}: {exc}") from exc
        return _normalize_rows(payload.get("values"))


class StaticResponseSource:
    """In-memory rows; used for dry runs and tests."""

    def __init__(self, rows: Sequence[Sequence[str]] | None = None) -> None:
        self.rows: List[List[str]] = [list(row) for row in rows or []]

    def read_all_rows(self) -> List[List[str]]:
        return [list(row) for row in self.rows]
