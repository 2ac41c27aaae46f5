"""Records for cached repositories and task workspaces."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass(slots=True, frozen=True)
class Workspace:
    id: str
    path: Path
    repository_id: str
    created_at: datetime

    def age_hours(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds() / 3600

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "path": str(self.path),
            "repository_id": self.repository_id,
            "created_at": self.created_at.isoformat(),
        }


__all__ = ["Workspace"]
