from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from draftsman.models import ACTIVE_STAGES, STAGES, PendingInteraction, Stage, utcnow_iso
from draftsman.protocol import ResumeContext

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HistoryEntry:
    kind: str
    content: str
    success: bool = True
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "success": self.success,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            kind=str(payload.get("kind", "")),
            content=str(payload.get("content", "")),
            success=bool(payload.get("success", True)),
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
        )


@dataclass(slots=True)
class ExecutionState:
    stage: Stage = "idle"
    current_task: str | None = None
    pending_interaction: PendingInteraction | None = None
    resume_context: ResumeContext | None = None
    cancelled: bool = False
    history: list[HistoryEntry] = field(default_factory=list)
    last_result: str | None = None
    history_limit: int = 100
    history_keep: int = 50

    def __post_init__(self) -> None:
        self.ensure_consistent()

    @property
    def is_active(self) -> bool:
        return self.stage in ACTIVE_STAGES

    def ensure_consistent(self) -> bool:
        """Repair the pending-interaction invariant; return True when a repair happened."""
        if self.stage not in STAGES:
            logger.warning("Unknown execution stage %r; resetting to idle", self.stage)
            self.stage = "idle"
            self.pending_interaction = None
            return True
        if self.stage == "awaiting_user" and self.pending_interaction is None:
            logger.warning(
                "Execution state awaiting user without a pending interaction; proceeding"
            )
            self.stage = "executing"
            return True
        if self.stage != "awaiting_user" and self.pending_interaction is not None:
            logger.warning("Dropping pending interaction while stage is %s", self.stage)
            self.pending_interaction = None
            return True
        return False

    def transition(
        self,
        stage: Stage,
        *,
        pending: PendingInteraction | None = None,
    ) -> None:
        self.stage = stage
        self.pending_interaction = pending if stage == "awaiting_user" else None
        self.ensure_consistent()

    def record(self, kind: str, content: str, *, success: bool = True) -> None:
        self.history.append(HistoryEntry(kind=kind, content=content, success=success))
        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_keep :]

    def reset(self) -> None:
        self.stage = "idle"
        self.current_task = None
        self.pending_interaction = None
        self.resume_context = None
        self.cancelled = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "current_task": self.current_task,
            "pending_interaction": (
                self.pending_interaction.to_dict() if self.pending_interaction else None
            ),
            "resume_context": self.resume_context.to_dict() if self.resume_context else None,
            "cancelled": self.cancelled,
            "history": [entry.to_dict() for entry in self.history],
            "last_result": self.last_result,
            "history_limit": self.history_limit,
            "history_keep": self.history_keep,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionState:
        pending = payload.get("pending_interaction")
        context = payload.get("resume_context")
        return cls(
            stage=payload.get("stage", "idle"),
            current_task=payload.get("current_task"),
            pending_interaction=PendingInteraction.from_dict(pending) if pending else None,
            resume_context=ResumeContext.from_dict(context) if context else None,
            cancelled=bool(payload.get("cancelled", False)),
            history=[HistoryEntry.from_dict(item) for item in payload.get("history") or []],
            last_result=payload.get("last_result"),
            history_limit=int(payload.get("history_limit", 100)),
            history_keep=int(payload.get("history_keep", 50)),
        )

    def copy(self) -> ExecutionState:
        return ExecutionState.from_dict(self.to_dict())
