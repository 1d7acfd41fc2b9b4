"""Per-tag release pipeline as a LangGraph StateGraph.

The graph has one node per working stage. Entry is routed from the stage
persisted in the registry, so an interrupted run resumes where it stopped
instead of starting over. Every stage change is written to the registry
before the next node runs.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph

from .builder import BuildExecutor
from .config import BuilderConfig
from .errors import BuildFailure, SigningError
from .models import JobConfig, PipelineRun, PipelineStage, Tag
from .settings import RuntimeSettings
from .signing import SigningGateway
from .tag_registry import TagRegistry, new_owner_id

logger = logging.getLogger(__name__)

STAGE_ORDER: tuple[PipelineStage, ...] = (
    PipelineStage.PENDING,
    PipelineStage.BUILDING,
    PipelineStage.BUILT,
    PipelineStage.ATTESTING,
    PipelineStage.ATTESTED,
    PipelineStage.AWAITING_SIGNATURES,
    PipelineStage.CODESIGNING,
    PipelineStage.DONE,
)

# Node that continues a run from each persisted stage.
_NODE_FOR_STAGE: dict[PipelineStage, str] = {
    PipelineStage.PENDING: "build",
    PipelineStage.BUILDING: "build",
    PipelineStage.BUILT: "attest",
    PipelineStage.ATTESTING: "attest",
    PipelineStage.ATTESTED: "await_signatures",
    PipelineStage.AWAITING_SIGNATURES: "await_signatures",
    PipelineStage.CODESIGNING: "codesign",
}


def stage_reached(stage: PipelineStage, target: PipelineStage) -> bool:
    if stage not in STAGE_ORDER or target not in STAGE_ORDER:
        return stage == target
    return STAGE_ORDER.index(stage) >= STAGE_ORDER.index(target)


class PipelineGraphState(TypedDict, total=False):
    tag: str
    stage: str
    attempts: dict[str, int]
    output_dir: str | None
    error: str | None
    suspended: bool
    signatures_ready: bool
    stop_after: str | None
    poll_signatures: bool


class PipelineRunner:
    """Drives one tag at a time through build, attest, signature wait and codesign.

    A single runner may serve several threads; all per-run data lives in the
    graph state, and the registry lock keeps two runs off the same tag.
    """

    def __init__(
        self,
        *,
        registry: TagRegistry,
        executor: BuildExecutor,
        gateway: SigningGateway,
        config: BuilderConfig,
        settings: RuntimeSettings,
        stop_event: threading.Event | None = None,
        job_config: JobConfig | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.gateway = gateway
        self.config = config
        self.settings = settings
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.job_config = job_config or JobConfig(multi_package=config.multi_package, max_jobs=config.max_jobs)
        self.graph = self._build_graph().compile()

    @property
    def targets(self) -> Sequence[str]:
        return self.config.hosts

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineGraphState)
        graph.add_node("build", self._build_node)
        graph.add_node("attest", self._attest_node)
        graph.add_node("await_signatures", self._await_signatures_node)
        graph.add_node("codesign", self._codesign_node)

        routes = {
            "build": "build",
            "attest": "attest",
            "await_signatures": "await_signatures",
            "codesign": "codesign",
            "end": END,
        }
        graph.add_conditional_edges(START, self._route, routes)
        for node in ("build", "attest", "await_signatures", "codesign"):
            graph.add_conditional_edges(node, self._route, routes)
        return graph

    def recursion_limit(self) -> int:
        retry = self.config.retry
        needed = 2 * (retry.build_max_attempts + retry.codesign_max_attempts) + 10
        return max(self.settings.recursion_limit, needed)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(self, state: PipelineGraphState) -> str:
        stage = PipelineStage(state["stage"])
        if stage.is_terminal or state.get("suspended"):
            return "end"
        stop_after = state.get("stop_after")
        if stop_after is not None and stage_reached(stage, PipelineStage(stop_after)):
            return "end"
        if self.stop_event.is_set():
            logger.info("Tag %s: stop requested, suspending at %s", state["tag"], stage.value)
            return "end"
        if stage == PipelineStage.AWAITING_SIGNATURES and state.get("signatures_ready"):
            return "codesign"
        return _NODE_FOR_STAGE[stage]

    def _transition(self, state: PipelineGraphState, stage: PipelineStage, **changes: Any) -> dict[str, Any]:
        previous = state["stage"]
        attempts = changes.get("attempts", state.get("attempts"))
        output_dir = changes.get("output_dir", state.get("output_dir"))
        error = changes.get("error")
        self.registry.record_stage(
            state["tag"],
            stage,
            error=error,
            attempts=attempts,
            output_dir=Path(output_dir) if output_dir else None,
        )
        if stage == PipelineStage.FAILED:
            logger.error("Tag %s: %s -> %s: %s", state["tag"], previous, stage.value, error)
        elif previous != stage.value:
            logger.info("Tag %s: %s -> %s", state["tag"], previous, stage.value)
        return {"stage": stage.value, "error": error, **changes}

    def _output_dir(self, state: PipelineGraphState) -> Path:
        if state.get("output_dir"):
            return Path(str(state["output_dir"]))
        return self.executor.output_dir(Tag(state["tag"]))

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _build_node(self, state: PipelineGraphState) -> dict[str, Any]:
        tag = Tag(state["tag"])
        attempts = dict(state.get("attempts") or {})
        attempts["build"] = attempts.get("build", 0) + 1
        limit = self.config.retry.build_max_attempts
        update = self._transition(state, PipelineStage.BUILDING, attempts=attempts)
        state = {**state, **update}

        try:
            result = self.executor.build(tag, self.targets, self.job_config)
        except BuildFailure as exc:
            message = f"build attempt {attempts['build']}/{limit} failed: {exc}"
            logger.warning("Tag %s: %s", tag, message)
            if attempts["build"] >= limit:
                return self._transition(state, PipelineStage.FAILED, attempts=attempts, error=message)
            return self._transition(state, PipelineStage.PENDING, attempts=attempts, error=message)
        return self._transition(state, PipelineStage.BUILT, attempts=attempts, output_dir=str(result.output_dir))

    def _attest_node(self, state: PipelineGraphState) -> dict[str, Any]:
        tag = Tag(state["tag"])
        output_dir = self._output_dir(state)
        update = self._transition(state, PipelineStage.ATTESTING, output_dir=str(output_dir))
        state = {**state, **update}
        try:
            result = self.gateway.attest(tag, output_dir, self.config.signer_name)
        except SigningError as exc:
            return self._transition(state, PipelineStage.FAILED, error=f"attestation failed: {exc}")
        if result.skipped:
            logger.info("Tag %s: existing attestation reused", tag)
        return self._transition(state, PipelineStage.ATTESTED)

    def _await_signatures_node(self, state: PipelineGraphState) -> dict[str, Any]:
        tag = Tag(state["tag"])
        output_dir = self._output_dir(state)
        update = self._transition(state, PipelineStage.AWAITING_SIGNATURES, error=state.get("error"))
        state = {**state, **update}
        retry = self.config.retry
        required = self.config.required_detached_signers
        entry = self.registry.get(tag.name)
        started = entry.awaiting_since if entry is not None and entry.awaiting_since else datetime.now(UTC)
        deadline = started + timedelta(seconds=retry.signature_timeout_seconds)
        delay = retry.signature_poll_initial_seconds

        while True:
            if self.stop_event.is_set():
                logger.info("Tag %s: stop requested while awaiting signatures", tag)
                return {**update, "suspended": True}
            try:
                ready = self.gateway.await_detached_signatures(tag, output_dir, required)
            except SigningError as exc:
                return self._transition(state, PipelineStage.FAILED, error=f"signature check failed: {exc}")
            if ready:
                logger.info("Tag %s: detached signatures available", tag)
                return {**update, "signatures_ready": True}
            remaining = (deadline - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                return self._transition(
                    state,
                    PipelineStage.FAILED,
                    error=f"detached signatures not published within {retry.signature_timeout_seconds:.0f}s",
                )
            if not state.get("poll_signatures", True):
                logger.info("Tag %s: detached signatures not yet available", tag)
                return {**update, "suspended": True, "error": "detached signatures not yet available"}
            wait = min(delay, remaining)
            logger.debug("Tag %s: signatures not ready, next check in %.0fs", tag, wait)
            if self.stop_event.wait(wait):
                logger.info("Tag %s: stop requested while awaiting signatures", tag)
                return {**update, "suspended": True}
            delay = min(delay * retry.signature_poll_backoff, retry.signature_poll_max_seconds)

    def _codesign_node(self, state: PipelineGraphState) -> dict[str, Any]:
        tag = Tag(state["tag"])
        output_dir = self._output_dir(state)
        attempts = dict(state.get("attempts") or {})
        attempts["codesign"] = attempts.get("codesign", 0) + 1
        limit = self.config.retry.codesign_max_attempts
        update = self._transition(state, PipelineStage.CODESIGNING, attempts=attempts, signatures_ready=False)
        state = {**state, **update}
        try:
            self.gateway.codesign(tag, output_dir)
        except SigningError as exc:
            message = f"codesign attempt {attempts['codesign']}/{limit} failed: {exc}"
            logger.warning("Tag %s: %s", tag, message)
            if attempts["codesign"] >= limit:
                return self._transition(state, PipelineStage.FAILED, attempts=attempts, error=message)
            return self._transition(
                state, PipelineStage.AWAITING_SIGNATURES, attempts=attempts, error=message, signatures_ready=False
            )
        return self._transition(state, PipelineStage.DONE, attempts=attempts)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        tag: Tag,
        *,
        stop_after: PipelineStage | None = None,
        reset_to: PipelineStage | None = None,
        poll_signatures: bool = True,
    ) -> PipelineRun:
        """Run *tag* from its persisted stage until done, failed, suspended or *stop_after*.

        ``reset_to`` moves the entry back to a stage before running; it is
        applied only once the tag lock is held and marks the entry as driven by
        manual commands, which the watcher then leaves alone.

        Raises:
            LockContentionError: If another run owns the tag.
        """
        self.registry.observe(tag.name)
        owner = new_owner_id()
        with self.registry.holding(tag.name, owner, heartbeat_interval=self.settings.heartbeat_seconds):
            if reset_to is not None:
                self.registry.reset(tag.name, reset_to, manual=True)
            entry = self.registry.get(tag.name)
            if entry is None:
                raise KeyError(f"tag {tag.name} vanished from the registry")
            if not entry.is_active:
                logger.info("Tag %s: nothing to do (stage %s)", tag, entry.stage.value)
                return PipelineRun(
                    tag=tag,
                    stage=entry.stage,
                    attempts=dict(entry.attempts),
                    output_dir=Path(entry.output_dir) if entry.output_dir else None,
                    error=entry.error,
                )

            logger.info("Tag %s: running pipeline from %s (owner %s)", tag, entry.stage.value, owner)
            initial_state: PipelineGraphState = {
                "tag": tag.name,
                "stage": entry.stage.value,
                "attempts": dict(entry.attempts),
                "output_dir": entry.output_dir,
                "error": entry.error,
                "suspended": False,
                "signatures_ready": False,
                "stop_after": stop_after.value if stop_after is not None else None,
                "poll_signatures": poll_signatures,
            }
            result = self.graph.invoke(initial_state, config={"recursion_limit": self.recursion_limit()})

        stage = PipelineStage(result["stage"])
        suspended = bool(result.get("suspended")) or (
            not stage.is_terminal
            and self.stop_event.is_set()
            and not (stop_after is not None and stage_reached(stage, stop_after))
        )
        return PipelineRun(
            tag=tag,
            stage=stage,
            attempts=dict(result.get("attempts") or {}),
            output_dir=Path(result["output_dir"]) if result.get("output_dir") else None,
            error=result.get("error"),
            suspended=suspended,
        )
