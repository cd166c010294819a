r"""Rolling restart of storage and compute nodes of a database cluster.

Every node is restarted only after the cluster maintenance coordinator (CMS) grants a maintenance task for it,
nodes are processed one at a time.

Usage example:
    cookbook clusterops.cluster.roll_restart --availability-mode weak --hosts 1,2,3
    cookbook clusterops.cluster.roll_restart --tenants /Root/db1 --exclude-hosts db1001.example.org \
        --ssh-args "pssh -p 2" --internal-units
    cookbook clusterops.cluster.roll_restart --continue

"""
import argparse
import logging
import shlex
from typing import List

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase, CookbookRunnerBase
from wmflib.interactive import ensure_shell_is_durable

from clusterops import ArgparseFormatter
from clusterops.libs.common import ClusterOpsConfig
from clusterops.libs.maintenance import AvailabilityMode, CMSHTTPAPI, MaintenanceCoordinatorClient
from clusterops.libs.nodes import NodeFilterSpec
from clusterops.libs.restarters import BaremetalOpts, RemoteTool, build_executors
from clusterops.libs.rolling import (
    DEFAULT_RESTART_DURATION,
    DEFAULT_RETRY_COUNT,
    RestartOptions,
    RollingRestart,
    RunStateStore,
    default_run_id,
)

LOGGER = logging.getLogger(__name__)


def parser_type_list(value: str) -> List[str]:
    """Split a comma separated argument value, like `host1,host2`."""
    return [item.strip() for item in value.split(",") if item.strip()]


class RollRestartNodes(CookbookBase):
    """Rolling restart of the cluster nodes, coordinated with the cluster maintenance coordinator."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        parser.add_argument(
            "--hosts",
            type=parser_type_list,
            action="extend",
            default=[],
            help=(
                "Restart only the specified hosts. You can specify a comma separated list of host FQDNs or of "
                "node ids, but you can not mix host FQDNs and node ids in this option."
            ),
        )
        parser.add_argument(
            "--tenants",
            type=parser_type_list,
            action="extend",
            default=[],
            help="Restart only the nodes of the specified tenants (comma separated).",
        )
        parser.add_argument(
            "--exclude-hosts",
            type=parser_type_list,
            action="extend",
            default=[],
            help="Never restart these hosts (comma separated host FQDNs or node ids).",
        )
        parser.add_argument(
            "--availability-mode",
            choices=list(AvailabilityMode),
            type=AvailabilityMode,
            default=AvailabilityMode.STRONG,
            help="Availability mode the coordinator uses to decide if a node can be taken out of service.",
        )
        parser.add_argument(
            "--restart-duration",
            type=int,
            default=DEFAULT_RESTART_DURATION,
            help=(
                "The coordinator releases the node for maintenance for restart-duration * restart-retry-number "
                "seconds. Any maintenance after that is considered a regular cluster failure."
            ),
        )
        parser.add_argument(
            "--restart-retry-number",
            type=int,
            default=DEFAULT_RETRY_COUNT,
            help="How many times every node should be tried on error.",
        )
        parser.add_argument(
            "--retry-delay-seconds",
            type=float,
            default=0.0,
            help="Seconds to wait between two attempts on the same node.",
        )
        parser.add_argument(
            "--continue",
            dest="continue_run",
            action="store_true",
            help=(
                "Use at your own risk. Continue the previous rolling restart, if there was one. The set of selected "
                "nodes must be the same as in the previous invocation, only the node set is checked."
            ),
        )
        parser.add_argument(
            "--run-id",
            default=None,
            help="Identifier of the rolling restart, to keep track of separate runs. Defaults to one per cluster.",
        )
        parser.add_argument(
            "--internal-units",
            action="store_true",
            help="The nodes run with the internal deployment systemd units instead of the standard ones.",
        )
        parser.add_argument(
            "--ssh-tool",
            choices=list(RemoteTool),
            type=RemoteTool,
            default=None,
            help="Tool used to run the restart command on the hosts (default ssh).",
        )
        parser.add_argument(
            "--ssh-args",
            default="",
            help=(
                "Extra arguments for the remote tool, like \"-o ConnectTimeout=10\". A tool name found here "
                "(ssh, pssh, nssh) is used as the tool."
            ),
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> CookbookRunnerBase:
        """Get runner"""
        return RollRestartNodesRunner(args=args, spicerack=self.spicerack)


class RollRestartNodesRunner(CookbookRunnerBase):
    """Runner for RollRestartNodes"""

    def __init__(self, args: argparse.Namespace, spicerack: Spicerack):
        """Init"""
        self.dry_run = spicerack.dry_run
        self.filter_spec = NodeFilterSpec(
            hosts=tuple(args.hosts), tenants=tuple(args.tenants), exclude_hosts=tuple(args.exclude_hosts)
        )
        self.filter_spec.validate()
        self.options = RestartOptions(
            availability_mode=args.availability_mode,
            restart_duration=args.restart_duration,
            restart_retry_number=args.restart_retry_number,
            continue_run=args.continue_run,
            retry_delay_seconds=args.retry_delay_seconds,
        )
        self.options.validate()

        config = ClusterOpsConfig.from_config_dir(spicerack.config_dir)
        self.run_id = args.run_id or default_run_id(config.cms_url)
        self.coordinator = MaintenanceCoordinatorClient(
            api=CMSHTTPAPI.from_config(config),
            request_timeout_seconds=config.request_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )
        executors = build_executors(
            BaremetalOpts.from_ssh_args(
                shlex.split(args.ssh_args),
                tool=args.ssh_tool,
                internal_units=args.internal_units,
                unit_overrides=config.units,
            )
        )
        self.rolling_restart = RollingRestart(
            coordinator=self.coordinator,
            executors=executors,
            store=RunStateStore(config.state_dir),
            options=self.options,
        )

        if not self.dry_run:
            ensure_shell_is_durable()

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        hosts = ",".join(self.filter_spec.hosts) or "all nodes"
        return f"{self.run_id} for {hosts} in {self.options.availability_mode} mode"

    def run(self) -> int:
        """Main entry point"""
        catalog = self.coordinator.list_nodes()

        if self.dry_run:
            targets = self.rolling_restart.select_nodes(self.filter_spec, catalog)
            LOGGER.info("Would restart %d nodes, in this order:", len(targets))
            for node in targets:
                LOGGER.info("%s", node)
            return 0

        state = self.rolling_restart.prepare(run_id=self.run_id, filter_spec=self.filter_spec, catalog=catalog)
        report = self.rolling_restart.run(state=state, catalog=catalog)

        LOGGER.info("Rolling restart %s summary:\n%s", self.run_id, report.as_table())
        if not report.success:
            LOGGER.error("Some nodes were not restarted, exhausted nodes are not retried by --continue")

        return report.exit_code
