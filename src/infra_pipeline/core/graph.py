"""LangGraph workflow for the Terraform lifecycle.

Pipeline Flow:

    ┌──────┐   ┌─────┐   ┌──────────┐   ┌──────┐   ┌───────┐   ┌─────────┐
    │ init │──▶│ fmt │──▶│ validate │──▶│ plan │──▶│ apply │──▶│ destroy │──▶ END
    └──────┘   └─────┘   └──────────┘   └──────┘   └───────┘   └─────────┘

Every node records exactly one StageResult. A node runs its stage only when
the stage flag is on and no earlier stage has halted the run; otherwise it
records a skip with the reason. Approval for apply/destroy is an external
fact checked once before the graph starts.
"""

import logging
import operator
import threading
from concurrent.futures import ThreadPoolExecutor
from fnmatch import fnmatch
from typing import Annotated, Callable, Iterable, Optional, TypedDict

from langgraph.graph import END, StateGraph

from infra_pipeline.cloud.azure import IdentityProvider
from infra_pipeline.core.errors import ApprovalNotSatisfiedError, ConfigurationError
from infra_pipeline.core.gate import check_flag_rules
from infra_pipeline.core.state import (
    PipelineRun,
    RunStatus,
    SkipReason,
    Stage,
    StageResult,
    StageStatus,
)
from infra_pipeline.terraform.cli import StageExecutor

logger = logging.getLogger(__name__)

# Progress callback type - receives (event_type, message, details)
ProgressCallback = Callable[[str, str, Optional[dict]], None]

# Stages whose failure may be tolerated; the plan/apply/destroy chain never is
BEST_EFFORT_ALLOWED = frozenset({Stage.FMT, Stage.VALIDATE})


class RunGraphState(TypedDict):
    """State schema for the stage graph."""

    run: PipelineRun
    cloud_env: dict[str, str]

    # One entry per stage, appended in graph order
    results: Annotated[list[StageResult], operator.add]

    # Set once a stage failure or an abort stops the run
    halt_reason: Optional[SkipReason]


def build_stage_graph(node_factory: Callable[[Stage], Callable[[RunGraphState], dict]]):
    """Build the linear StateGraph over all lifecycle stages.

    Returns:
        Compiled LangGraph workflow
    """
    graph = StateGraph(RunGraphState)
    stages = Stage.ordered()

    for stage in stages:
        graph.add_node(stage.value, node_factory(stage))

    graph.set_entry_point(stages[0].value)
    for current, following in zip(stages, stages[1:]):
        graph.add_edge(current.value, following.value)
    graph.add_edge(stages[-1].value, END)

    return graph.compile()


class PipelineRunner:
    """Executes pipeline runs stage by stage through a StageExecutor."""

    def __init__(
        self,
        executor: StageExecutor,
        identity: Optional[IdentityProvider] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.executor = executor
        self.identity = identity
        self.progress = progress
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._aborted: set[str] = set()
        self._graph = None

    @property
    def graph(self):
        """Lazy-load the graph."""
        if self._graph is None:
            self._graph = build_stage_graph(self._stage_node)
        return self._graph

    def abort(self, run_id: Optional[str] = None) -> None:
        """Stop a run before its next stage starts. A running stage is not interrupted.

        Without a run_id every run currently executing on this runner is
        stopped. Runs started afterwards are unaffected.
        """
        with self._lock:
            targets = {run_id} if run_id is not None else set(self._active)
            self._aborted |= targets
        logger.warning(f"Abort requested for {', '.join(sorted(targets)) or 'no active runs'}")

    def _is_aborted(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._aborted

    def execute(self, run: PipelineRun) -> PipelineRun:
        """Run the enabled stages of a pending run.

        Args:
            run: Pending pipeline run

        Returns:
            The same run, in a terminal status

        Raises:
            ConfigurationError: Run is not pending or its flags are invalid
            ApprovalNotSatisfiedError: Apply/destroy without the approval gate
            AuthenticationError: Cloud identity exchange failed
        """
        self._check_preconditions(run)

        cloud_env: dict[str, str] = {}
        if self.identity is not None and any(s.requires_cloud for s in run.flags.enabled_stages()):
            cloud_env = self.identity.authenticate()

        run.start()
        logger.info(f"Run {run.run_id} started for {run.environment.name} ({run.trigger.value})")
        self._notify("run_started", f"Run {run.run_id} on {run.environment.name}", {"run_id": run.run_id})

        with self._lock:
            self._active.add(run.run_id)
        try:
            final_state = self.graph.invoke({
                "run": run,
                "cloud_env": cloud_env,
                "results": [],
                "halt_reason": None,
            })
        finally:
            with self._lock:
                self._active.discard(run.run_id)
                self._aborted.discard(run.run_id)
        for result in final_state["results"]:
            run.record(result)
        run.finish()

        logger.info(f"Run {run.run_id} {run.status.value}")
        self._notify(
            "run_finished",
            f"Run {run.run_id} {run.status.value}",
            {"run_id": run.run_id, "status": run.status.value},
        )
        return run

    def execute_all(self, runs: Iterable[PipelineRun], max_workers: int = 4) -> list[PipelineRun]:
        """Execute runs concurrently across environments.

        Runs targeting the same environment share a state key and are executed
        one after another in submission order. A fatal error stops the rest of
        that environment's runs and is re-raised once all groups finish.
        """
        runs = list(runs)
        groups: dict[str, list[PipelineRun]] = {}
        for run in runs:
            groups.setdefault(run.environment.name, []).append(run)

        def run_group(group: list[PipelineRun]) -> None:
            for run in group:
                self.execute(run)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(run_group, group) for group in groups.values()]

        for future in futures:
            future.result()
        return runs

    def _check_preconditions(self, run: PipelineRun) -> None:
        if run.status != RunStatus.PENDING:
            raise ConfigurationError(
                f"Run {run.run_id} is {run.status.value}, expected pending"
            )

        check_flag_rules(run.flags.as_dict(), source=f"flags for run {run.run_id}")

        disallowed = sorted(s.value for s in run.best_effort - BEST_EFFORT_ALLOWED)
        if disallowed:
            raise ConfigurationError(
                f"Stages cannot be best-effort: {', '.join(disallowed)}",
                {"allowed": sorted(s.value for s in BEST_EFFORT_ALLOWED)},
            )

        gated = [s for s in run.flags.enabled_stages() if s.requires_approval]
        if not gated:
            return

        env = run.environment
        policy = env.approval
        if policy.required and not run.approval_satisfied:
            raise ApprovalNotSatisfiedError(
                env.name,
                f"{gated[0].value} requires approval",
                {"reviewers": list(policy.reviewers)},
            )
        if policy.branches:
            if run.branch is None or not any(fnmatch(run.branch, p) for p in policy.branches):
                raise ApprovalNotSatisfiedError(
                    env.name,
                    f"{gated[0].value} is not allowed from branch {run.branch!r}",
                    {"branches": list(policy.branches)},
                )

    def _stage_node(self, stage: Stage) -> Callable[[RunGraphState], dict]:
        """Create the graph node for one stage."""

        def node(state: RunGraphState) -> dict:
            run = state["run"]
            halt_reason = state.get("halt_reason")

            if halt_reason is not None:
                return self._skip(stage, halt_reason)

            if not run.flags.enabled(stage):
                return self._skip(stage, SkipReason.FLAG_DISABLED)

            if self._is_aborted(run.run_id):
                return {**self._skip(stage, SkipReason.ABORTED), "halt_reason": SkipReason.ABORTED}

            self._notify(
                "stage_started",
                f"{stage.value} ({StageStatus.EXECUTING.value})",
                {"stage": stage.value},
            )
            invocation = self.executor.run(
                stage,
                run.environment,
                env=state["cloud_env"] if stage.requires_cloud else None,
            )

            update: dict = {}
            if invocation.succeeded:
                status = StageStatus.COMPLETED
                self._notify("stage_completed", stage.value, {"stage": stage.value})
            else:
                status = StageStatus.FAILED
                self._notify(
                    "stage_failed",
                    f"{stage.value} exited with {invocation.returncode}",
                    {"stage": stage.value, "returncode": invocation.returncode},
                )
                if stage in run.best_effort:
                    logger.warning(f"Best-effort stage {stage.value} failed, continuing")
                else:
                    update["halt_reason"] = SkipReason.PRIOR_FAILURE

            update["results"] = [
                StageResult(
                    stage=stage,
                    status=status,
                    returncode=invocation.returncode,
                    output=invocation.diagnostic,
                    duration_seconds=invocation.duration_seconds,
                )
            ]
            return update

        node.__name__ = f"{stage.value}_node"
        return node

    def _skip(self, stage: Stage, reason: SkipReason) -> dict:
        self._notify("stage_skipped", f"{stage.value} ({reason.value})", {"stage": stage.value})
        return {
            "results": [StageResult(stage=stage, status=StageStatus.SKIPPED, skip_reason=reason)]
        }

    def _notify(self, event_type: str, message: str, details: Optional[dict] = None) -> None:
        if self.progress is not None:
            self.progress(event_type, message, details)
