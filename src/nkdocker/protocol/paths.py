"""Request path and query string construction."""

from __future__ import annotations

import base64
import json
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel

HUB = "https://index.docker.io/v1/"

FilterSpec = dict[str, list[str]]


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def normalize_filters(filters: Mapping[str, Any]) -> FilterSpec:
    """Promote every filter value to a list of strings.

    Example:
        normalize_filters({"status": "running", "exited": [0, 1]})
        -> {"status": ["running"], "exited": ["0", "1"]}
    """
    spec: FilterSpec = {}
    for name, value in filters.items():
        if isinstance(value, list | tuple | set | frozenset):
            spec[name] = [_to_text(v) for v in value]
        else:
            spec[name] = [_to_text(value)]
    return spec


def make_path(path: str, options: Mapping[str, Any] | None, allowed: Iterable[str]) -> str:
    """Append the allowed, non-None options to path as a query string.

    Keys not in `allowed` are ignored. A "filters" option is normalized
    with normalize_filters and sent as a JSON document.
    """
    allowed = set(allowed)
    params: list[tuple[str, str]] = []
    for key, value in (options or {}).items():
        if key not in allowed or value is None:
            continue
        if key == "filters":
            if not value:
                continue
            params.append((key, json.dumps(normalize_filters(value), separators=(",", ":"))))
        else:
            params.append((key, _to_text(value)))
    if not params:
        return path
    return f"{path}?{httpx.QueryParams(params)}"


def resource_path(*parts: str) -> str:
    """Join path segments, escaping each one.

    Example:
        resource_path("containers", "web", "json") -> "/containers/web/json"
    """
    return "/" + "/".join(quote(str(p), safe=":@/") for p in parts)


class RegistryAuth(BaseModel):
    """Credentials for a remote registry."""

    username: str
    password: str
    email: str = ""
    serveraddress: str = HUB

    def header(self) -> dict[str, str]:
        """X-Registry-Auth header carrying these credentials."""
        document = json.dumps(self.model_dump()).encode("utf-8")
        return {"X-Registry-Auth": base64.urlsafe_b64encode(document).decode("ascii")}
