"""Unit tests for run report persistence."""

import pytest

from infra_pipeline.core.artifacts import ArtifactManager
from infra_pipeline.core.errors import NotFoundError
from infra_pipeline.core.graph import PipelineRunner


class TestArtifactManager:
    @pytest.fixture
    def manager(self, tmp_path) -> ArtifactManager:
        return ArtifactManager(tmp_path / "reports")

    def test_save_and_load_failed_run(self, manager, make_run, fake_executor):
        run = PipelineRunner(fake_executor(fail_on=["plan"])).execute(make_run("qa"))

        path = manager.save_run(run)
        data = manager.load_run("qa", run.run_id)

        assert path.name == f"{run.run_id}.yaml"
        assert path.read_text().startswith(f"# Pipeline run {run.run_id} (qa)")
        assert data["status"] == "failed"
        assert data["failed_stage"] == "plan"
        assert data["backend_key"] == "qa.tfstate"
        assert [s["status"] for s in data["stages"]] == [
            "completed", "completed", "completed", "failed_stage", "skipped", "skipped",
        ]
        assert data["stages"][4]["skip_reason"] == "skipped_due_to_failure"

    def test_latest_tracks_most_recent_run(self, manager, make_run, fake_executor):
        runner = PipelineRunner(fake_executor())
        first = runner.execute(make_run("dev"))
        second = runner.execute(make_run("dev"))

        manager.save_run(first)
        manager.save_run(second)

        assert manager.load_run("dev")["run_id"] == second.run_id

    def test_missing_report(self, manager):
        with pytest.raises(NotFoundError):
            manager.load_run("dev")
