"""Run report persistence for audit and troubleshooting.

Each finished run is written as YAML under ``<root>/runs/<env>/``, alongside
a ``latest.yaml`` copy of the most recent report for that environment.
"""

from pathlib import Path
from typing import Any, Optional

import yaml

from infra_pipeline.core.errors import NotFoundError
from infra_pipeline.core.state import PipelineRun


class ArtifactManager:
    """Manages run report persistence."""

    def __init__(self, root: Optional[Path] = None):
        """Initialize the artifact manager.

        Args:
            root: Report directory. Defaults to ``.infra-pipeline`` in the cwd.
        """
        self._root = Path(root) if root is not None else Path(".infra-pipeline")
        self._runs_dir = self._root / "runs"

    def get_environment_dir(self, environment: str) -> Path:
        return self._runs_dir / environment

    def save_run(self, run: PipelineRun) -> Path:
        """Save a run report as <run_id>.yaml.

        Args:
            run: Finished pipeline run

        Returns:
            Path to the saved file
        """
        env_dir = self.get_environment_dir(run.environment.name)
        env_dir.mkdir(parents=True, exist_ok=True)
        file_path = env_dir / f"{run.run_id}.yaml"

        data = {
            "run_id": run.run_id,
            "environment": run.environment.name,
            "trigger": run.trigger.value,
            "status": run.status.value,
            "branch": run.branch,
            "approval_satisfied": run.approval_satisfied,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "backend_key": run.environment.backend.key,
            "flags": run.flags.as_dict(),
            "best_effort": sorted(s.value for s in run.best_effort),
            "stages": [
                {
                    "stage": r.stage.value,
                    "status": r.status.value,
                    "skip_reason": r.skip_reason.value if r.skip_reason else None,
                    "returncode": r.returncode,
                    "duration_seconds": round(r.duration_seconds, 3),
                    "output": r.output,
                }
                for r in run.results
            ],
        }
        failure = run.failure
        if failure is not None:
            data["failed_stage"] = failure.stage.value

        header = f"# Pipeline run {run.run_id} ({run.environment.name})"
        self._write_yaml(file_path, data, header=header)
        self._write_yaml(env_dir / "latest.yaml", data, header=header)
        return file_path

    def load_run(self, environment: str, run_id: str = "latest") -> dict[str, Any]:
        """Load a saved report."""
        path = self.get_environment_dir(environment) / f"{run_id}.yaml"
        if not path.exists():
            raise NotFoundError(f"No run report at {path}")
        return self._read_yaml(path)

    def _write_yaml(self, path: Path, data: dict[str, Any], header: str = "") -> None:
        """Write data to YAML file with optional header comment."""
        content = ""
        if header:
            content = header + "\n\n"

        content += yaml.safe_dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=120,
        )
        path.write_text(content)

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        content = path.read_text()
        return yaml.safe_load(content) or {}
