"""Error taxonomy for the live-patch engine.

- CdpTransportError: the CDP socket is gone. Fatal for the session.
- CdpCommandError: the browser answered a command with an error (patch rejected).
- CdpTimeoutError: no answer in time; only the waiting patch is affected.
- StylesheetSyntaxError: new style sheet text is not well-formed.

Unknown identities are not exceptions: registry lookups return NOT_FOUND.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .http_client import HttpClientError


class CdpTransportError(HttpClientError):
    """The CDP connection failed or was closed."""


class CdpTimeoutError(HttpClientError):
    """A CDP command got no response within the configured timeout."""


class CdpCommandError(HttpClientError):
    """A CDP command returned an error object."""

    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.error = error
        if isinstance(error, dict):
            message = str(error.get("message") or error)
            self.code = error.get("code")
        else:
            message = str(error)
            self.code = None
        super().__init__(f"{method}: {message}")


@dataclass
class StylesheetSyntaxError(Exception):
    issues: list[Any]

    def __str__(self) -> str:
        if not self.issues:
            return "invalid style sheet"
        first = self.issues[0]
        more = f" (+{len(self.issues) - 1} more)" if len(self.issues) > 1 else ""
        return f"{first}{more}"


__all__ = [
    "CdpCommandError",
    "CdpTimeoutError",
    "CdpTransportError",
    "HttpClientError",
    "StylesheetSyntaxError",
]
