from types import SimpleNamespace

from customs_sync.models.sync_job import SyncPhase
from customs_sync.sync_engine.stage_marker import STAGES, StageMarker, next_stage_after


class TestStageMarker:

    def test_listing(self):
        assert StageMarker(2, "Last month").serialize() == "STAGE:2:Last month"

    def test_detailing(self):
        marker = StageMarker(2, "Last month", phase=SyncPhase.DETAILING)
        assert marker.serialize() == "STAGE:2:Last month|PROCESSING_61_1"

    def test_completed_with_next(self):
        marker = StageMarker(2, "Last month", phase=SyncPhase.COMPLETED, next_stage=3)
        assert marker.serialize() == "STAGE:2:Last month|COMPLETED|NEXT:3"

    def test_final_stage_has_no_next(self):
        marker = StageMarker(5, "Full period", phase=SyncPhase.COMPLETED, next_stage=None)
        assert marker.serialize() == "STAGE:5:Full period|COMPLETED"

    def test_errors_suffix(self):
        marker = StageMarker(1, "Last week", phase=SyncPhase.COMPLETED, next_stage=2, error_count=2)
        assert marker.serialize() == "STAGE:1:Last week|COMPLETED|NEXT:2|ERRORS:2"

    def test_parse(self):
        marker = StageMarker.parse("STAGE:3:Last quarter|COMPLETED|NEXT:4|ERRORS:1")
        assert marker == StageMarker(3, "Last quarter", SyncPhase.COMPLETED, 4, 1)

    def test_parse_detail_phase(self):
        marker = StageMarker.parse("STAGE:4:Last year|PROCESSING_61_1")
        assert marker.phase is SyncPhase.DETAILING
        assert marker.next_stage is None

    def test_parse_rejects_other_notes(self):
        assert StageMarker.parse(None) is None
        assert StageMarker.parse("") is None
        assert StageMarker.parse("manual sync") is None

    def test_from_job(self):
        job = SimpleNamespace(
            stage=2, stage_label=None, phase=SyncPhase.COMPLETED, next_stage=3, failed_chunk_count=0
        )
        assert StageMarker.from_job(job).serialize() == "STAGE:2:Last month|COMPLETED|NEXT:3"
        assert StageMarker.from_job(SimpleNamespace(stage=None)) is None


class TestStages:

    def test_windows(self):
        assert [STAGES[s][0] for s in range(1, 6)] == [7, 30, 90, 365, 1095]

    def test_next_stage(self):
        assert next_stage_after(1) == 2
        assert next_stage_after(4) == 5
        assert next_stage_after(5) is None
