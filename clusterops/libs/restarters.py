#!/usr/bin/env python3
"""Node kind specific restart executors."""
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import IO, Dict, Iterable, List, Optional, Sequence, Tuple

from clusterops.libs.common import ArgparsableEnum
from clusterops.libs.nodes import Node, NodeKind

LOGGER = logging.getLogger(__name__)
RESTART_COMMAND_TEMPLATE = "(test -x /bin/systemctl && sudo systemctl restart {unit})"


class RestartError(Exception):
    """Parent exception for all the node restart issues."""


class RestartFailed(RestartError):
    """Risen when the remote restart command could not be launched or exited with an error."""


class NoExecutorForKind(RestartError):
    """Risen when a selected node is of a kind no executor knows how to restart."""


class RemoteTool(ArgparsableEnum):
    """Supported tools to run the restart command on the node host."""

    SSH = "ssh"
    PSSH = "pssh"
    NSSH = "nssh"


def split_tool_from_args(args: Iterable[str], default: RemoteTool = RemoteTool.SSH) -> Tuple[RemoteTool, List[str]]:
    """Pick the remote tool out of a list of arguments, like `["pssh", "-p", "2"]`.

    The last tool name found wins, everything else is kept as extra arguments for the tool.
    """
    tool = default
    remaining_args = []
    for arg in args:
        if arg in {member.value for member in RemoteTool}:
            tool = RemoteTool(arg)
        else:
            remaining_args.append(arg)

    return tool, remaining_args


@dataclass(frozen=True)
class BaremetalOpts:
    """Options shared by the executors that restart systemd units over a remote shell."""

    tool: RemoteTool = RemoteTool.SSH
    tool_args: Tuple[str, ...] = field(default_factory=tuple)
    internal_units: bool = False
    unit_overrides: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_ssh_args(
        cls,
        ssh_args: Sequence[str],
        tool: Optional[RemoteTool] = None,
        internal_units: bool = False,
        unit_overrides: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> "BaremetalOpts":
        """Build the options from the raw `--ssh-args` value, that might carry the tool name too."""
        found_tool, remaining_args = split_tool_from_args(ssh_args, default=tool or RemoteTool.SSH)
        return cls(
            tool=found_tool,
            tool_args=tuple(remaining_args),
            internal_units=internal_units,
            unit_overrides=unit_overrides or {},
        )


def get_remote_command_args(tool: RemoteTool, tool_args: Sequence[str], host: str, command: str) -> List[str]:
    """Full command line to run `command` on `host` with the given tool."""
    if tool == RemoteTool.SSH:
        return [tool.value, *tool_args, host, command]

    # pssh and nssh take the command first and the host list last
    return [tool.value, "run", *tool_args, command, host]


def stream_pipe_into_logger(pipe: IO[str], logger: logging.Logger, level: int, prefix: str) -> None:
    """Forward each line of the pipe to the logger until EOF."""
    for line in iter(pipe.readline, ""):
        logger.log(level, "[%s] %s", prefix, line.rstrip("\n"))


def run_remote_command(args: List[str], prefix: str) -> None:
    """Run the command streaming its stdout and stderr to the logs, wait for it to finish.

    Both streams are drained in parallel so a chatty one never blocks the other. Undecodable output bytes are
    replaced, the remote tool output is free form.
    """
    LOGGER.debug("Running: %s", " ".join(shlex.quote(arg) for arg in args))
    try:
        proc = subprocess.Popen(  # pylint: disable=consider-using-with
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            encoding="utf-8",
            errors="replace",
            shell=False,
        )
    except OSError as error:
        raise RestartFailed(f"Unable to launch {args[0]}: {error}") from error

    drain_errors = []
    with proc:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="restart-output") as pool:
            drains = [
                pool.submit(stream_pipe_into_logger, proc.stdout, LOGGER, logging.INFO, prefix),
                pool.submit(stream_pipe_into_logger, proc.stderr, LOGGER, logging.WARNING, prefix),
            ]
            for drain in drains:
                try:
                    drain.result()
                except (OSError, ValueError) as error:
                    drain_errors.append(error)

        # nobody reads the pipes anymore, the process could block forever on a write
        if drain_errors:
            proc.kill()
        returncode = proc.wait()

    if drain_errors:
        raise RestartFailed(f"Unable to read the output of {args[0]}: {drain_errors[0]}") from drain_errors[0]

    if returncode != 0:
        raise RestartFailed(f"{args[0]} exited with status {returncode}")


class RestartExecutor(ABC):
    """Knows how to restart one kind of nodes."""

    kind: NodeKind

    def filter(self, nodes: Iterable[Node]) -> List[Node]:
        """Get the nodes this executor handles, keeping the given order."""
        selected = [node for node in nodes if node.kind == self.kind]
        LOGGER.debug("%s selected the following nodes for restart: %s", self.__class__.__name__, selected)
        return selected

    @abstractmethod
    def restart_node(self, node: Node) -> None:
        """Restart the node, raise RestartFailed on failure."""


class BaremetalExecutor(RestartExecutor):
    """Restarts the node systemd unit over a remote shell."""

    standard_unit: str
    internal_unit: str

    def __init__(self, opts: BaremetalOpts):
        """Init."""
        self.opts = opts

    def get_unit_name(self, node: Node) -> str:
        """Systemd unit running the node, depends on the deployment mode."""
        overrides = self.opts.unit_overrides.get(self.kind.value, {})
        if self.opts.internal_units:
            unit = overrides.get("internal", self.internal_unit)
        else:
            unit = overrides.get("standard", self.standard_unit)

        return unit.format(port=node.port, tenant=node.tenant or "", node_id=node.node_id)

    def restart_node(self, node: Node) -> None:
        """Restart the node systemd unit."""
        unit = self.get_unit_name(node)
        LOGGER.info("Restarting %s, unit %s, with %s %s", node, unit, self.opts.tool, list(self.opts.tool_args))
        command = RESTART_COMMAND_TEMPLATE.format(unit=shlex.quote(unit))
        run_remote_command(
            get_remote_command_args(tool=self.opts.tool, tool_args=self.opts.tool_args, host=node.host, command=command),
            prefix=node.host,
        )


class StorageBaremetalExecutor(BaremetalExecutor):
    """Restarts storage nodes."""

    kind = NodeKind.STORAGE
    standard_unit = "ydb-server-storage.service"
    internal_unit = "kikimr"


class ComputeBaremetalExecutor(BaremetalExecutor):
    """Restarts compute (tenant) nodes, one unit per node process."""

    kind = NodeKind.COMPUTE
    standard_unit = "ydb-server-compute.service"
    internal_unit = "kikimr-multi@{port}"


EXECUTOR_CLASSES = (StorageBaremetalExecutor, ComputeBaremetalExecutor)


def build_executors(opts: BaremetalOpts) -> Dict[NodeKind, RestartExecutor]:
    """Get the node kind to executor lookup table."""
    return {executor_class.kind: executor_class(opts) for executor_class in EXECUTOR_CLASSES}


def executor_for(node: Node, executors: Dict[NodeKind, RestartExecutor]) -> RestartExecutor:
    """Get the executor whose filter claims the node."""
    for executor in executors.values():
        if executor.filter([node]):
            return executor

    raise NoExecutorForKind(f"No restart executor handles {node.kind.value} nodes ({node})")
