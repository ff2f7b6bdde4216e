from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .registry import IdentityRegistry

if TYPE_CHECKING:
    from .dispatch import Resource, WatchBinding

logger = logging.getLogger("hotpatch.state")


@dataclass
class SessionState:
    """Mutable state of the one page a server instance manages.

    Owned by HotpatchServer and passed to every component that needs it.
    """

    generation: int = 0
    registry: IdentityRegistry = field(init=False)
    resources: dict[str, Resource] = field(default_factory=dict)
    bindings: dict[str, WatchBinding] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.registry = IdentityRegistry(generation=lambda: self.generation)

    def advance_generation(self, reason: str = "") -> int:
        """Start a new page generation; every recorded identity becomes stale."""
        self.generation += 1
        logger.info("session generation=%d reason=%s", self.generation, reason or "-")
        return self.generation
