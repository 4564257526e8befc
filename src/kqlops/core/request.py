"""Per-request properties and client identification headers."""

from __future__ import annotations

import getpass
import os
import platform
import re
import sys
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

CLIENT_NAME = "Kusto.Python.kqlops"
CLIENT_VERSION = "0.1.0"
UNKNOWN = "unknown"

_ESCAPE = re.compile(r"[\r\n\s{}|]+")


def _escape(value: str) -> str:
    return "{" + _ESCAPE.sub("_", value) + "}"


def format_client_version(fields: list[tuple[str, str]]) -> str:
    """Render `Name:{value}|Name:{value}`, escaping separators in values."""
    return "|".join(f"{name}:{_escape(value)}" for name, value in fields)


def default_application() -> str:
    name = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else ""
    return name or UNKNOWN


def default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return UNKNOWN


def client_version_header() -> str:
    return format_client_version(
        [
            (CLIENT_NAME, CLIENT_VERSION),
            ("Os", platform.system() or UNKNOWN),
            ("Arch", platform.machine() or UNKNOWN),
        ]
    )


def new_client_request_id(prefix: str = "KQLOPS.execute") -> str:
    return f"{prefix};{uuid.uuid4()}"


@dataclass
class ClientRequestProperties:
    """
    Options, parameters and tracing identity sent with one request.

    `options` and `parameters` travel in the request body; the
    `client_request_id`, `application` and `user` go into `x-ms-*` headers.
    """

    RESULTS_PROGRESSIVE_ENABLED = "results_progressive_enabled"
    SERVER_TIMEOUT = "servertimeout"

    options: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    client_request_id: str | None = None
    application: str | None = None
    user: str | None = None

    def set_option(self, name: str, value: Any) -> None:
        self.options[name] = value

    def get_option(self, name: str, default: Any = None) -> Any:
        return self.options.get(name, default)

    def add_parameter(self, name: str, value: Any) -> None:
        """Add a query parameter; values must be JSON scalars."""
        if not isinstance(value, (str, int, float, bool)) and value is not None:
            raise TypeError(f"parameter '{name}' must be a JSON scalar")
        self.parameters[name] = value

    @property
    def results_progressive_enabled(self) -> bool:
        return bool(self.options.get(self.RESULTS_PROGRESSIVE_ENABLED, False))

    @results_progressive_enabled.setter
    def results_progressive_enabled(self, value: bool) -> None:
        self.options[self.RESULTS_PROGRESSIVE_ENABLED] = bool(value)

    def set_server_timeout(self, timeout: timedelta) -> None:
        """Set the server-side timeout, written as a `d.hh:mm:ss` timespan."""
        total = int(timeout.total_seconds())
        days, rest = divmod(total, 86400)
        hours, rest = divmod(rest, 3600)
        minutes, seconds = divmod(rest, 60)
        self.options[self.SERVER_TIMEOUT] = f"{days}.{hours:02}:{minutes:02}:{seconds:02}"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.options:
            payload["Options"] = dict(self.options)
        if self.parameters:
            payload["Parameters"] = dict(self.parameters)
        return payload
