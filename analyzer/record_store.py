from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from .auth import Session
from .constants import SALESFORCE_API_VERSION


class NetworkError(RuntimeError):
    """Raised when the data store cannot be reached at all."""


class StoreRequestError(RuntimeError):
    """Raised when the data store rejects a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MetadataError(StoreRequestError):
    pass


class QueryError(StoreRequestError):
    pass


@dataclass
class Record:
    id: str
    filter_value: str
    fields: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class QueryPage:
    records: List[Record]
    next_token: Optional[str] = None


def escape_soql_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_select_list(field_names: Sequence[str], filter_field: str) -> List[str]:
    selected: List[str] = []
    seen = set()
    for name in ["Id", *field_names, filter_field]:
        key = name.lower()
        if key in seen:
            continue
        selected.append(name)
        seen.add(key)
    return selected


def build_soql(
    object_type: str,
    select_fields: Sequence[str],
    filter_field: str,
    values: Sequence[str],
) -> str:
    in_clause = ",".join(f"'{escape_soql_value(value)}'" for value in values)
    columns = ", ".join(build_select_list(select_fields, filter_field))
    return (
        f"SELECT {columns} FROM {object_type} "
        f"WHERE {filter_field} IN ({in_clause}) ORDER BY Id"
    )


def lookup_field(raw: Mapping[str, Any], name: str) -> Any:
    """Resolve a possibly dotted relationship path (``Account.Name``) in a REST record."""
    current: Any = raw
    for part in name.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def to_record(raw: Mapping[str, Any], field_names: Sequence[str], filter_field: str) -> Record:
    fields: Dict[str, Optional[str]] = {}
    for name in field_names:
        value = lookup_field(raw, name)
        fields[name] = None if value is None else str(value)
    filter_value = lookup_field(raw, filter_field)
    return Record(
        id=str(raw.get("Id") or ""),
        filter_value="" if filter_value is None else str(filter_value),
        fields=fields,
    )


class SalesforceRecordStore:
    """REST query and describe calls against one authenticated org."""

    def __init__(
        self,
        session: Session,
        *,
        api_version: str = SALESFORCE_API_VERSION,
        timeout: float = 60.0,
    ) -> None:
        self.session = session
        self.api_version = api_version
        self.timeout = timeout
        # continuation url -> (select fields, filter field) of the query that issued it
        self._cursors: Dict[str, Tuple[List[str], str]] = {}

    @property
    def base_url(self) -> str:
        return f"{self.session.instance_url.rstrip('/')}/services/data/{self.api_version}"

    def _get(
        self,
        url: str,
        *,
        error_cls: type,
        params: Optional[Dict[str, str]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", **self.session.auth_headers()}
        if extra_headers:
            headers.update(extra_headers)
        try:
            response = requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Network error: {exc}") from exc
        if response.status_code >= 400:
            body = response.text[:1000]
            raise error_cls(
                f"Salesforce API error: {response.status_code} - {body}",
                status_code=response.status_code,
                body=body,
            )
        try:
            return response.json()
        except ValueError as exc:
            snippet = response.text[:500].replace("\n", " ")
            raise error_cls(
                f"Invalid JSON response from {url}: {snippet}",
                status_code=response.status_code,
                body=snippet,
            ) from exc

    def describe_fields(self, object_type: str, field_names: Sequence[str]) -> Dict[str, str]:
        data = self._get(f"{self.base_url}/sobjects/{object_type}/describe", error_cls=MetadataError)
        by_name = {}
        for entry in data.get("fields") or []:
            name = entry.get("name")
            if isinstance(name, str):
                by_name[name.lower()] = entry.get("label") or name
        return {name: by_name[name.lower()] for name in field_names if name.lower() in by_name}

    def _to_page(self, data: Dict[str, Any], field_names: List[str], filter_field: str) -> QueryPage:
        records = [to_record(raw, field_names, filter_field) for raw in data.get("records") or []]
        next_token = None if data.get("done") is True else data.get("nextRecordsUrl")
        if next_token:
            self._cursors[next_token] = (field_names, filter_field)
        return QueryPage(records=records, next_token=next_token or None)

    def query(
        self,
        object_type: str,
        select_fields: Sequence[str],
        filter_field: str,
        values: Sequence[str],
        page_size: int,
    ) -> QueryPage:
        soql = build_soql(object_type, select_fields, filter_field, values)
        data = self._get(
            f"{self.base_url}/query",
            error_cls=QueryError,
            params={"q": soql},
            extra_headers={"Sforce-Query-Options": f"batchSize={page_size}"},
        )
        return self._to_page(data, list(select_fields), filter_field)

    def query_continuation(self, token: str) -> QueryPage:
        try:
            field_names, filter_field = self._cursors.pop(token)
        except KeyError:
            raise QueryError(f"Unknown continuation token: {token}") from None
        url = token if token.startswith("http") else f"{self.session.instance_url.rstrip('/')}{token}"
        return self._to_page(self._get(url, error_cls=QueryError), field_names, filter_field)
