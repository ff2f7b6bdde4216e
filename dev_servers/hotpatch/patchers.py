"""Content-type specific live patch executors.

Every executor implements `apply(session, url, new_content) -> PatchResult`
and never raises for expected failures: unknown identities and invalid
content are `skipped`, commands the browser rejects are `failed`. Transport
loss (CdpTransportError) propagates to the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

from .css_syntax import validate_stylesheet
from .errors import CdpCommandError, CdpTimeoutError, StylesheetSyntaxError
from .registry import NOT_FOUND, IdentityRegistry, ScriptIdentity

logger = logging.getLogger("hotpatch.patchers")

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"

IDENTITY_UNKNOWN = "identity unknown"
INVALID_SYNTAX = "invalid syntax"

SCRIPT_PATCH_EVENT = "script-patch"

# Errors that mean "the browser did not take this patch" (vs. the session being gone).
_REJECTED = (CdpCommandError, CdpTimeoutError)


class PatchSession(Protocol):
    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...


@dataclass(frozen=True, slots=True)
class NotificationOutcome:
    delivered: bool
    error: str | None = None


@dataclass(slots=True)
class PatchResult:
    status: str
    reason: str | None = None
    error: BaseException | None = None
    # Secondary, independently failing step (script-patch event).
    notification: NotificationOutcome | None = None

    @classmethod
    def applied(cls, *, notification: NotificationOutcome | None = None) -> PatchResult:
        return cls(status=APPLIED, notification=notification)

    @classmethod
    def skipped(cls, reason: str, *, error: BaseException | None = None) -> PatchResult:
        return cls(status=SKIPPED, reason=reason, error=error)

    @classmethod
    def failed(cls, error: BaseException) -> PatchResult:
        return cls(status=FAILED, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.status == APPLIED

    def describe(self) -> str:
        parts = [f"status={self.status}"]
        if self.reason:
            parts.append(f"reason={self.reason}")
        if self.notification is not None:
            parts.append("notified=yes" if self.notification.delivered else f"notified=no ({self.notification.error})")
        return " ".join(parts)


class Patcher:
    """Base executor. Subclasses set `kind` and implement `apply`."""

    kind: ClassVar[str] = "other"

    def __init__(self, registry: IdentityRegistry) -> None:
        self.registry = registry

    async def apply(self, session: PatchSession, url: str, new_content: str) -> PatchResult:
        raise NotImplementedError


class StylesheetPatcher(Patcher):
    kind = "stylesheet"

    async def apply(self, session: PatchSession, url: str, new_content: str) -> PatchResult:
        issues = validate_stylesheet(new_content)
        if issues:
            logger.info("css validation failed url=%s: %s", url, "; ".join(str(i) for i in issues))
            return PatchResult.skipped(INVALID_SYNTAX, error=StylesheetSyntaxError(issues))

        identity = self.registry.lookup_stylesheet(url)
        if identity is NOT_FOUND:
            return PatchResult.skipped(IDENTITY_UNKNOWN)

        try:
            await session.send(
                "CSS.setStyleSheetText",
                {"styleSheetId": identity.stylesheet_id, "text": new_content},
            )
        except _REJECTED as exc:
            return PatchResult.failed(exc)
        return PatchResult.applied()


def script_patch_expression(url: str) -> str:
    """JS that dispatches a `script-patch` CustomEvent with the patched URL."""
    init = json.dumps({"detail": {"scriptUrl": url}})
    return (
        "(function() {\n"
        f"  const event = new CustomEvent({json.dumps(SCRIPT_PATCH_EVENT)}, {init});\n"
        "  window.dispatchEvent(event);\n"
        "})();"
    )


class ScriptPatcher(Patcher):
    kind = "script"

    async def apply(self, session: PatchSession, url: str, new_content: str) -> PatchResult:
        identity = self.registry.lookup_script(url)
        if identity is NOT_FOUND:
            return PatchResult.skipped(IDENTITY_UNKNOWN)

        try:
            result = await session.send(
                "Debugger.setScriptSource",
                {
                    "scriptId": identity.script_id,
                    "scriptSource": new_content,
                    "allowTopFrameEditing": True,
                },
            )
        except _REJECTED as exc:
            return PatchResult.failed(exc)

        # Older browsers omit `status` and report compile errors via exceptionDetails.
        status = result.get("status")
        if (status is not None and status != "Ok") or result.get("exceptionDetails"):
            detail = status or (result.get("exceptionDetails") or {}).get("text") or "rejected"
            return PatchResult.failed(CdpCommandError("Debugger.setScriptSource", {"message": str(detail)}))

        notification = await self._notify(session, url, identity)
        return PatchResult.applied(notification=notification)

    async def _notify(self, session: PatchSession, url: str, identity: ScriptIdentity) -> NotificationOutcome:
        params: dict[str, Any] = {"expression": script_patch_expression(url)}
        if identity.execution_context_id is not None:
            params["contextId"] = identity.execution_context_id
        try:
            try:
                result = await session.send("Runtime.evaluate", params)
            except CdpCommandError:
                if "contextId" not in params:
                    raise
                # The script's context can be gone while the source is still live.
                params.pop("contextId")
                result = await session.send("Runtime.evaluate", params)
        except _REJECTED as exc:
            logger.warning("script-patch notification failed url=%s: %s", url, exc)
            return NotificationOutcome(delivered=False, error=str(exc))

        details = result.get("exceptionDetails")
        if details:
            text = str(details.get("text") or "exception") if isinstance(details, dict) else "exception"
            logger.warning("script-patch notification threw url=%s: %s", url, text)
            return NotificationOutcome(delivered=False, error=text)
        return NotificationOutcome(delivered=True)


class DocumentPatcher(Patcher):
    kind = "document"

    async def apply(self, session: PatchSession, url: str, new_content: str) -> PatchResult:
        try:
            # Node ids die with any DOM mutation; always fetch the root fresh.
            doc = await session.send("DOM.getDocument", {"depth": 0})
            root = doc.get("root") if isinstance(doc, dict) else None
            node_id = root.get("nodeId") if isinstance(root, dict) else None
            if node_id is None:
                return PatchResult.failed(CdpCommandError("DOM.getDocument", {"message": "no root node"}))
            await session.send("DOM.setOuterHTML", {"nodeId": node_id, "outerHTML": new_content})
        except _REJECTED as exc:
            return PatchResult.failed(exc)
        return PatchResult.applied()


_PATCHERS: dict[str, type[Patcher]] = {
    "text/css": StylesheetPatcher,
    "application/javascript": ScriptPatcher,
    "text/javascript": ScriptPatcher,
    "application/x-javascript": ScriptPatcher,
    "text/html": DocumentPatcher,
}


def normalize_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def select_patcher(content_type: str | None) -> type[Patcher] | None:
    """Return the executor for a content type, or None if it cannot be live-patched."""
    return _PATCHERS.get(normalize_content_type(content_type))


def content_kind(content_type: str | None) -> str:
    patcher = select_patcher(content_type)
    return patcher.kind if patcher is not None else "other"


__all__ = [
    "APPLIED",
    "FAILED",
    "IDENTITY_UNKNOWN",
    "INVALID_SYNTAX",
    "SCRIPT_PATCH_EVENT",
    "SKIPPED",
    "DocumentPatcher",
    "NotificationOutcome",
    "PatchResult",
    "PatchSession",
    "Patcher",
    "ScriptPatcher",
    "StylesheetPatcher",
    "content_kind",
    "normalize_content_type",
    "script_patch_expression",
    "select_patcher",
]
