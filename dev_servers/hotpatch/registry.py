"""URL → runtime identity tables.

Identities are recorded from CDP events and stamped with the session
generation current at record time. A lookup that finds an entry from an
older generation drops it and reports NOT_FOUND: after a navigation the
old script/stylesheet ids point at nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, TypeVar, Union

if TYPE_CHECKING:
    from .session_cdp import CdpSession

logger = logging.getLogger("hotpatch.registry")


class _NotFound:
    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


@dataclass(frozen=True, slots=True)
class ScriptIdentity:
    script_id: str
    execution_context_id: int | None = None
    generation: int = 0


@dataclass(frozen=True, slots=True)
class StylesheetIdentity:
    stylesheet_id: str
    generation: int = 0


Identity = Union[ScriptIdentity, StylesheetIdentity]
_I = TypeVar("_I", ScriptIdentity, StylesheetIdentity)


class IdentityRegistry:
    """Per-kind URL → identity maps with overwrite-on-reparse semantics."""

    def __init__(self, generation: Callable[[], int] | None = None) -> None:
        self._generation = generation or (lambda: 0)
        self._tables: dict[type, dict[str, Identity]] = {
            ScriptIdentity: {},
            StylesheetIdentity: {},
        }
        self._unsubscribe: list[Callable[[], None]] = []

    @property
    def generation(self) -> int:
        return int(self._generation())

    def record(self, url: str, identity: Identity) -> Identity:
        """Store (or overwrite) the identity for url, stamped with the current generation."""
        stamped = replace(identity, generation=self.generation)
        self._tables[type(identity)][url] = stamped
        return stamped

    def lookup(self, url: str, kind: type[_I]) -> _I | _NotFound:
        table = self._tables[kind]
        identity = table.get(url)
        if identity is None:
            return NOT_FOUND
        if identity.generation != self.generation:
            logger.debug("stale identity dropped url=%s generation=%s", url, identity.generation)
            del table[url]
            return NOT_FOUND
        return identity  # type: ignore[return-value]

    def lookup_script(self, url: str) -> ScriptIdentity | _NotFound:
        return self.lookup(url, ScriptIdentity)

    def lookup_stylesheet(self, url: str) -> StylesheetIdentity | _NotFound:
        return self.lookup(url, StylesheetIdentity)

    def clear(self) -> None:
        for table in self._tables.values():
            table.clear()

    def __len__(self) -> int:
        return sum(len(t) for t in self._tables.values())

    # ─────────────────────────────────────────────────────────────────────────
    # CDP event handlers
    # ─────────────────────────────────────────────────────────────────────────

    def on_script_parsed(self, params: dict[str, Any]) -> None:
        url = str(params.get("url") or "")
        script_id = params.get("scriptId")
        if not url or script_id is None:
            return
        ctx = params.get("executionContextId")
        self.record(
            url,
            ScriptIdentity(script_id=str(script_id), execution_context_id=int(ctx) if ctx is not None else None),
        )

    def on_stylesheet_added(self, params: dict[str, Any]) -> None:
        header = params.get("header")
        if not isinstance(header, dict):
            return
        url = str(header.get("sourceURL") or "")
        sheet_id = header.get("styleSheetId")
        if not url or sheet_id is None:
            return
        self.record(url, StylesheetIdentity(stylesheet_id=str(sheet_id)))

    def on_stylesheet_removed(self, params: dict[str, Any]) -> None:
        sheet_id = str(params.get("styleSheetId") or "")
        if not sheet_id:
            return
        table = self._tables[StylesheetIdentity]
        for url, identity in list(table.items()):
            if isinstance(identity, StylesheetIdentity) and identity.stylesheet_id == sheet_id:
                del table[url]

    def attach(self, session: CdpSession) -> None:
        """Subscribe the event handlers to a session (Debugger/CSS must be enabled)."""
        self.detach()
        self._unsubscribe = [
            session.on("Debugger.scriptParsed", self.on_script_parsed),
            session.on("CSS.styleSheetAdded", self.on_stylesheet_added),
            session.on("CSS.styleSheetRemoved", self.on_stylesheet_removed),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []


__all__ = [
    "NOT_FOUND",
    "Identity",
    "IdentityRegistry",
    "ScriptIdentity",
    "StylesheetIdentity",
]
