"""
Run report.

Tracks, per package, the last pipeline stage it reached and whether it
failed there, so a run can report which packages went through end to end
and which were skipped at which stage.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum


class Stage(Enum):
    """Pipeline stages, in execution order."""

    DEFINITION = "definition"
    PARSE = "parse"
    KEYS = "keys"
    FETCH = "fetch"
    BUILD = "build"
    INSTALL = "install"


class PackageStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PackageOutcome:
    name: str
    stage: Stage = Stage.DEFINITION
    status: PackageStatus = PackageStatus.PENDING
    error: str | None = None


@dataclass
class RunReport:
    """Outcome of one update run."""

    packages: dict[str, PackageOutcome] = field(default_factory=dict)
    started: float = field(default_factory=time.time)
    notes: list[str] = field(default_factory=list)

    @classmethod
    def create(cls, names: list[str]) -> "RunReport":
        return cls(packages={name: PackageOutcome(name) for name in names})

    def advance(self, name: str, stage: Stage) -> None:
        """Mark ``name`` as having entered ``stage``."""
        outcome = self.packages.setdefault(name, PackageOutcome(name))
        outcome.stage = stage

    def fail(self, name: str, stage: Stage, error: str) -> None:
        outcome = self.packages.setdefault(name, PackageOutcome(name))
        outcome.stage = stage
        outcome.status = PackageStatus.FAILED
        outcome.error = error

    def complete(self, name: str) -> None:
        outcome = self.packages.setdefault(name, PackageOutcome(name))
        outcome.stage = Stage.INSTALL
        outcome.status = PackageStatus.COMPLETED

    @property
    def succeeded(self) -> list[str]:
        return [n for n, o in self.packages.items() if o.status is PackageStatus.COMPLETED]

    @property
    def skipped(self) -> list[PackageOutcome]:
        return [o for o in self.packages.values() if o.status is PackageStatus.FAILED]

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict (handling enums)."""
        data = asdict(self)
        for outcome in data["packages"].values():
            outcome["stage"] = outcome["stage"].value
            outcome["status"] = outcome["status"].value
        return data
