"""Staged full-period sync windows and the status-note marker.

Job rows keep stage state in structured columns; ``StageMarker`` renders the
legacy pipe-delimited note (``STAGE:2:Last month|PROCESSING_61_1``) that older
clients poll for, and parses it back.
"""

import re
from dataclasses import dataclass

from customs_sync.models.sync_job import SyncPhase

FINAL_STAGE = 5

# stage -> (days back, label)
STAGES: dict[int, tuple[int, str]] = {
    1: (7, "Last week"),
    2: (30, "Last month"),
    3: (90, "Last quarter"),
    4: (365, "Last year"),
    5: (1095, "Full period"),
}

_STAGE_RE = re.compile(r"STAGE:(\d+):([^|]*)")
_DETAIL_RE = re.compile(r"\|PROCESSING_61_1")
_COMPLETED_RE = re.compile(r"\|COMPLETED")
_NEXT_RE = re.compile(r"\|NEXT:(\d+)")
_ERRORS_RE = re.compile(r"\|ERRORS:(\d+)")


@dataclass(frozen=True)
class StageMarker:
    stage: int
    label: str
    phase: SyncPhase = SyncPhase.LISTING
    next_stage: int | None = None
    error_count: int = 0

    def serialize(self) -> str:
        parts = [f"STAGE:{self.stage}:{self.label}"]
        if self.phase is SyncPhase.DETAILING:
            parts.append("PROCESSING_61_1")
        elif self.phase is SyncPhase.COMPLETED:
            parts.append("COMPLETED")
            if self.next_stage is not None:
                parts.append(f"NEXT:{self.next_stage}")
        if self.error_count:
            parts.append(f"ERRORS:{self.error_count}")
        return "|".join(parts)

    @classmethod
    def parse(cls, note: str | None) -> "StageMarker | None":
        if not note:
            return None
        stage_match = _STAGE_RE.search(note)
        if not stage_match:
            return None

        phase = SyncPhase.LISTING
        if _COMPLETED_RE.search(note):
            phase = SyncPhase.COMPLETED
        elif _DETAIL_RE.search(note):
            phase = SyncPhase.DETAILING
        next_match = _NEXT_RE.search(note)
        errors_match = _ERRORS_RE.search(note)
        return cls(
            stage=int(stage_match.group(1)),
            label=stage_match.group(2),
            phase=phase,
            next_stage=int(next_match.group(1)) if next_match else None,
            error_count=int(errors_match.group(1)) if errors_match else 0,
        )

    @classmethod
    def from_job(cls, job) -> "StageMarker | None":
        if job.stage is None:
            return None
        return cls(
            stage=job.stage,
            label=job.stage_label or STAGES.get(job.stage, (0, ""))[1],
            phase=job.phase,
            next_stage=job.next_stage,
            error_count=job.failed_chunk_count,
        )


def next_stage_after(stage: int) -> int | None:
    return stage + 1 if stage < FINAL_STAGE else None
