#!/usr/bin/env python3
"""Rolling restart orchestration: retries, persisted progress and the per-node control loop."""
import hashlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dateutil.parser import isoparse
from prettytable import PrettyTable

from clusterops.libs.maintenance import AvailabilityMode, MaintenanceCoordinatorClient, MaintenanceError
from clusterops.libs.nodes import Node, NodeCatalog, NodeFilterSpec, NodeKind, resolve_nodes
from clusterops.libs.restarters import NoExecutorForKind, RestartExecutor, RestartFailed, executor_for

LOGGER = logging.getLogger(__name__)
DEFAULT_RESTART_DURATION = 3
DEFAULT_RETRY_COUNT = 3


class RollingRestartError(Exception):
    """Parent exception for all the rolling restart issues."""


class InvalidRestartOptions(RollingRestartError):
    """Risen when the rolling restart options are not valid."""


class ContinuationMismatch(RollingRestartError):
    """Risen when continuing a run whose persisted node set differs from the one selected now."""


class RunStateMalformed(RollingRestartError):
    """Risen when the persisted run state can't be loaded."""


@dataclass(frozen=True)
class RestartOptions:
    """Options of one rolling restart invocation."""

    availability_mode: AvailabilityMode = AvailabilityMode.STRONG
    restart_duration: int = DEFAULT_RESTART_DURATION
    restart_retry_number: int = DEFAULT_RETRY_COUNT
    continue_run: bool = False
    retry_delay_seconds: float = 0.0

    def validate(self) -> None:
        """Check the options before contacting the cluster."""
        if not isinstance(self.availability_mode, AvailabilityMode):
            raise InvalidRestartOptions(f"specified not supported availability mode: {self.availability_mode}")

        if self.restart_duration < 0:
            raise InvalidRestartOptions(
                f"specified invalid restart duration seconds: {self.restart_duration}. Must be positive"
            )

        if self.restart_retry_number < 0:
            raise InvalidRestartOptions(
                f"specified invalid restart retry number: {self.restart_retry_number}. Must be positive"
            )

        if self.retry_delay_seconds < 0:
            raise InvalidRestartOptions(
                f"specified invalid retry delay seconds: {self.retry_delay_seconds}. Must be positive"
            )

    @property
    def maintenance_duration(self) -> timedelta:
        """How long the coordinator gives the node away for each maintenance task."""
        return timedelta(seconds=self.restart_duration * self.restart_retry_number)


class AttemptOutcome(Enum):
    """Result of a single restart attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REJECTED = "rejected"


class NodeRestartState(Enum):
    """Where a node is in its restart lifecycle."""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        """No more attempts will be made on the node."""
        return self in (NodeRestartState.SUCCEEDED, NodeRestartState.EXHAUSTED)


@dataclass
class RestartAttempt:
    """One try at restarting a node."""

    number: int
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation."""
        return {
            "number": self.number,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestartAttempt":
        """Load from the serialized representation."""
        return cls(
            number=int(data["number"]),
            outcome=AttemptOutcome(data["outcome"]),
            reason=data.get("reason") or "",
            timestamp=isoparse(data["timestamp"]),
        )


@dataclass
class NodeProgress:
    """Attempt history of one node of the run.

    `exhausted` is set once the node used all the attempts it was allowed, raising the retry number when
    continuing the run does not bring it back.
    """

    node_id: int
    host: str
    kind: NodeKind
    attempts: List[RestartAttempt] = field(default_factory=list)
    exhausted: bool = False

    @classmethod
    def from_node(cls, node: Node) -> "NodeProgress":
        """Start tracking a node."""
        return cls(node_id=node.node_id, host=node.host, kind=node.kind)

    @property
    def completed_attempts(self) -> List[RestartAttempt]:
        """Attempts that reached an outcome."""
        return [attempt for attempt in self.attempts if attempt.outcome != AttemptOutcome.PENDING]

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation."""
        return {
            "node_id": self.node_id,
            "host": self.host,
            "kind": self.kind.value,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "exhausted": self.exhausted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeProgress":
        """Load from the serialized representation, attempts that never completed are dropped."""
        progress = cls(
            node_id=int(data["node_id"]),
            host=data["host"],
            kind=NodeKind(data["kind"]),
            attempts=[RestartAttempt.from_dict(attempt) for attempt in data.get("attempts") or []],
            exhausted=bool(data.get("exhausted", False)),
        )
        progress.attempts = progress.completed_attempts
        return progress


class RetryController:
    """Tracks the attempts of each node against the retry ceiling.

    Pending -> Attempting -> Succeeded, or Retrying -> Attempting again, or Exhausted once the ceiling is hit.
    A zero retry number still allows one attempt.
    """

    def __init__(self, restart_retry_number: int):
        """Init."""
        self.ceiling = max(restart_retry_number, 1)

    def get_state(self, progress: NodeProgress) -> NodeRestartState:
        """Current state of the node, derived from its attempt history."""
        if progress.exhausted:
            return NodeRestartState.EXHAUSTED
        if not progress.attempts:
            return NodeRestartState.PENDING

        last_attempt = progress.attempts[-1]
        if last_attempt.outcome == AttemptOutcome.PENDING:
            return NodeRestartState.ATTEMPTING
        if last_attempt.outcome == AttemptOutcome.SUCCESS:
            return NodeRestartState.SUCCEEDED
        if len(progress.attempts) >= self.ceiling:
            return NodeRestartState.EXHAUSTED

        return NodeRestartState.RETRYING

    def can_attempt(self, progress: NodeProgress) -> bool:
        """Whether another attempt can be made on the node."""
        return self.get_state(progress) in (NodeRestartState.PENDING, NodeRestartState.RETRYING)

    def start_attempt(self, progress: NodeProgress) -> RestartAttempt:
        """Open a new attempt on the node."""
        if not self.can_attempt(progress):
            raise RollingRestartError(
                f"Node {progress.node_id} can't be attempted again, it is {self.get_state(progress).value}"
            )

        attempt = RestartAttempt(number=len(progress.attempts) + 1)
        progress.attempts.append(attempt)
        return attempt

    @staticmethod
    def complete_attempt(attempt: RestartAttempt, outcome: AttemptOutcome, reason: str = "") -> None:
        """Record the outcome of an open attempt."""
        attempt.outcome = outcome
        attempt.reason = reason
        attempt.timestamp = datetime.now(timezone.utc)


@dataclass
class RunState:
    """Durable snapshot of a rolling restart run."""

    run_id: str
    selection: Dict[str, List[str]]
    availability_mode: AvailabilityMode
    restart_duration: int
    restart_retry_number: int
    nodes: List[NodeProgress] = field(default_factory=list)

    @classmethod
    def new(
        cls, run_id: str, filter_spec: NodeFilterSpec, options: RestartOptions, targets: List[Node]
    ) -> "RunState":
        """Create the state of a fresh run, all the nodes pending."""
        return cls(
            run_id=run_id,
            selection=filter_spec.to_dict(),
            availability_mode=options.availability_mode,
            restart_duration=options.restart_duration,
            restart_retry_number=options.restart_retry_number,
            nodes=[NodeProgress.from_node(node) for node in targets],
        )

    @property
    def target_node_ids(self) -> List[int]:
        """Ids of the nodes of the run, in run order."""
        return [progress.node_id for progress in self.nodes]

    def get_progress(self, node: Node) -> NodeProgress:
        """Get the progress of one of the nodes of the run."""
        for progress in self.nodes:
            if progress.node_id == node.node_id:
                return progress

        raise RollingRestartError(f"{node} is not part of run {self.run_id}")

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation."""
        return {
            "run_id": self.run_id,
            "selection": self.selection,
            "availability_mode": self.availability_mode.value,
            "restart_duration": self.restart_duration,
            "restart_retry_number": self.restart_retry_number,
            "nodes": [progress.to_dict() for progress in self.nodes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        """Load from the serialized representation."""
        try:
            return cls(
                run_id=data["run_id"],
                selection=data.get("selection") or {},
                availability_mode=AvailabilityMode(data["availability_mode"]),
                restart_duration=int(data["restart_duration"]),
                restart_retry_number=int(data["restart_retry_number"]),
                nodes=[NodeProgress.from_dict(progress) for progress in data.get("nodes") or []],
            )
        except (KeyError, TypeError, ValueError) as error:
            raise RunStateMalformed(f"Unable to load run state: {error}") from error


class RunStateStore:
    """Keeps run states as yaml files, one per run id."""

    def __init__(self, state_dir: Path):
        """Init."""
        self.state_dir = Path(state_dir)

    def get_path(self, run_id: str) -> Path:
        """File holding the state of the given run."""
        return self.state_dir / f"{run_id}.yaml"

    def load(self, run_id: str) -> Optional[RunState]:
        """Get the persisted state of the run, None if there is none."""
        path = self.get_path(run_id)
        if not path.exists():
            return None

        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as error:
            raise RunStateMalformed(f"Unable to parse run state file {path}: {error}") from error

        if not isinstance(data, dict):
            raise RunStateMalformed(f"Was expecting a dict in run state file {path}, got {data}")

        return RunState.from_dict(data)

    def save(self, state: RunState) -> None:
        """Persist the state, the previous version is kept if writing fails half way."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.get_path(state.run_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{state.run_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as tmp_file:
                yaml.safe_dump(state.to_dict(), tmp_file, default_flow_style=False, sort_keys=False)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        LOGGER.debug("Saved run state to %s", path)


def default_run_id(cms_url: str) -> str:
    """Run id shared by all the invocations against the same cluster."""
    return f"rolling-restart-{hashlib.sha256(cms_url.encode()).hexdigest()[:12]}"


@dataclass(frozen=True)
class NodeReport:
    """Final status of one node."""

    node_id: int
    host: str
    kind: NodeKind
    state: NodeRestartState
    attempts: int
    last_reason: str

    def table_row(self) -> list:
        """Return a row suitable for PrettyTable.add_row()"""
        return [self.node_id, self.host, self.kind.value, self.state.value, self.attempts, self.last_reason]


@dataclass(frozen=True)
class RunReport:
    """Final status of the run."""

    run_id: str
    nodes: List[NodeReport]

    @property
    def success(self) -> bool:
        """The run is successful only when all the nodes were restarted."""
        return all(node.state == NodeRestartState.SUCCEEDED for node in self.nodes)

    @property
    def exit_code(self) -> int:
        """Process exit code for the run."""
        return 0 if self.success else 1

    def as_table(self) -> PrettyTable:
        """Summary table of the run."""
        table = PrettyTable()
        table.field_names = ["Node", "Host", "Kind", "State", "Attempts", "Last error"]
        table.align["Last error"] = "l"
        for node in self.nodes:
            table.add_row(node.table_row())

        return table


class RollingRestart:
    """Restarts the selected nodes one at a time, each within a maintenance task granted by the coordinator.

    Nodes are never restarted concurrently, the coordinator can only reason about one negotiation at a time.
    """

    def __init__(
        self,
        coordinator: MaintenanceCoordinatorClient,
        executors: Dict[NodeKind, RestartExecutor],
        store: RunStateStore,
        options: RestartOptions,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Init."""
        self._coordinator = coordinator
        self._executors = executors
        self._store = store
        self.options = options
        self.retry_controller = RetryController(options.restart_retry_number)
        self._sleep = sleep

    def select_nodes(self, filter_spec: NodeFilterSpec, catalog: NodeCatalog) -> List[Node]:
        """Resolve the filter against the catalog, every selected node must be claimed by an executor filter."""
        selected = resolve_nodes(filter_spec, catalog)
        claimed_ids = set()
        for executor in self._executors.values():
            claimed_ids.update(node.node_id for node in executor.filter(selected))

        unclaimed = [node for node in selected if node.node_id not in claimed_ids]
        if unclaimed:
            raise NoExecutorForKind(f"No restart executor handles: {', '.join(str(node) for node in unclaimed)}")

        return selected

    def prepare(self, run_id: str, filter_spec: NodeFilterSpec, catalog: NodeCatalog) -> RunState:
        """Resolve the targets and create, or load when continuing, the run state.

        All the configuration problems are raised here, before any maintenance is requested.
        """
        self.options.validate()
        targets = self.select_nodes(filter_spec, catalog)

        if not self.options.continue_run:
            state = RunState.new(run_id=run_id, filter_spec=filter_spec, options=self.options, targets=targets)
            self._store.save(state)
            LOGGER.info("Starting rolling restart %s of %d nodes", run_id, len(targets))
            return state

        state = self._store.load(run_id)
        if state is None:
            raise ContinuationMismatch(f"There is no previous rolling restart {run_id} to continue")

        target_ids = {node.node_id for node in targets}
        persisted_ids = set(state.target_node_ids)
        if target_ids != persisted_ids:
            raise ContinuationMismatch(
                f"The selected nodes differ from the ones of rolling restart {run_id}: "
                f"only selected now {sorted(target_ids - persisted_ids)}, "
                f"only in the previous run {sorted(persisted_ids - target_ids)}"
            )

        # exhaustion is judged against the retry number the attempts were made with
        previous_retry_controller = RetryController(state.restart_retry_number)
        for progress in state.nodes:
            if previous_retry_controller.get_state(progress) == NodeRestartState.EXHAUSTED:
                progress.exhausted = True

        if (state.availability_mode, state.restart_duration, state.restart_retry_number) != (
            self.options.availability_mode,
            self.options.restart_duration,
            self.options.restart_retry_number,
        ):
            LOGGER.warning(
                "Continuing rolling restart %s with different options: mode %s -> %s, duration %d -> %d, "
                "retries %d -> %d",
                run_id,
                state.availability_mode,
                self.options.availability_mode,
                state.restart_duration,
                self.options.restart_duration,
                state.restart_retry_number,
                self.options.restart_retry_number,
            )
            state.availability_mode = self.options.availability_mode
            state.restart_duration = self.options.restart_duration
            state.restart_retry_number = self.options.restart_retry_number

        # keep the persisted order, it is the order the run was started with
        targets_by_id = {node.node_id: node for node in targets}
        state.nodes = [progress for progress in state.nodes if progress.node_id in targets_by_id]
        LOGGER.info("Continuing rolling restart %s of %d nodes", run_id, len(state.nodes))
        return state

    def _attempt(self, node: Node, executor: RestartExecutor) -> AttemptOutcome:
        with self._coordinator.maintenance(
            node=node, availability_mode=self.options.availability_mode, duration=self.options.maintenance_duration
        ) as task:
            if not task.granted:
                raise _AttemptRejected(task.reason)

            executor.restart_node(node)

        return AttemptOutcome.SUCCESS

    def process_node(self, node: Node, state: RunState) -> NodeRestartState:
        """Run attempts on the node until it succeeds or exhausts its retries."""
        progress = state.get_progress(node)
        node_state = self.retry_controller.get_state(progress)
        if node_state == NodeRestartState.SUCCEEDED:
            LOGGER.info("Skipping %s, already restarted", node)
            return node_state
        if node_state == NodeRestartState.EXHAUSTED:
            LOGGER.info("Skipping %s, it already used all of its %d attempts", node, self.retry_controller.ceiling)
            return node_state

        executor = executor_for(node, self._executors)
        while self.retry_controller.can_attempt(progress):
            attempt = self.retry_controller.start_attempt(progress)
            LOGGER.info("Restarting %s, attempt %d/%d", node, attempt.number, self.retry_controller.ceiling)
            try:
                self._attempt(node, executor)
            except _AttemptRejected as rejection:
                self.retry_controller.complete_attempt(attempt, AttemptOutcome.REJECTED, str(rejection))
            except (RestartFailed, MaintenanceError) as error:
                LOGGER.error("Attempt %d on %s failed: %s", attempt.number, node, error)
                self.retry_controller.complete_attempt(attempt, AttemptOutcome.FAILED, str(error))
            else:
                self.retry_controller.complete_attempt(attempt, AttemptOutcome.SUCCESS)

            node_state = self.retry_controller.get_state(progress)
            progress.exhausted = node_state == NodeRestartState.EXHAUSTED
            self._store.save(state)

            if node_state == NodeRestartState.RETRYING and self.options.retry_delay_seconds:
                LOGGER.info("Waiting %.1f seconds before retrying %s", self.options.retry_delay_seconds, node)
                self._sleep(self.options.retry_delay_seconds)

        if node_state == NodeRestartState.SUCCEEDED:
            LOGGER.info("Restarted %s", node)
        else:
            LOGGER.error("Giving up on %s after %d attempts", node, len(progress.attempts))

        return node_state

    def run(self, state: RunState, catalog: NodeCatalog) -> RunReport:
        """Process all the nodes of the run, one at a time, and report their final state."""
        nodes_by_id = {node.node_id: node for node in catalog}
        total = len(state.nodes)
        for index, progress in enumerate(state.nodes):
            node = nodes_by_id[progress.node_id]
            LOGGER.info("Processing %s, %d done, %d to go", node, index, total - index)
            self.process_node(node, state)

        return self.get_report(state)

    def get_report(self, state: RunState) -> RunReport:
        """Per-node final state of the run."""
        reports = []
        for progress in state.nodes:
            last_reason = progress.attempts[-1].reason if progress.attempts else ""
            reports.append(
                NodeReport(
                    node_id=progress.node_id,
                    host=progress.host,
                    kind=progress.kind,
                    state=self.retry_controller.get_state(progress),
                    attempts=len(progress.attempts),
                    last_reason=last_reason,
                )
            )

        return RunReport(run_id=state.run_id, nodes=reports)


class _AttemptRejected(Exception):
    """The coordinator did not grant the maintenance task for the attempt."""
