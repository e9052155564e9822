from __future__ import annotations

import dataclasses
import logging

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Action:
    verb: str
    resource: str
    detail: str = ""
    pending: bool = False

    def __str__(self) -> str:
        prefix = "would " if self.pending else ""
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{prefix}{self.verb} {self.resource}{suffix}"


@dataclasses.dataclass
class ActionLog:
    """Mutating calls made (or, when `apply` is False, that would be made) during one pass."""

    apply: bool = True
    actions: list[Action] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)

    def record(self, verb: str, resource: str, detail: str = "") -> bool:
        """Log an intended mutation; returns True when the caller should perform it."""
        action = Action(verb=verb, resource=resource, detail=detail, pending=not self.apply)
        self.actions.append(action)
        logger.info("%s", action)
        return self.apply

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning("%s", message)

    @property
    def changed(self) -> bool:
        return len(self.actions) > 0
