#!/usr/bin/env python3
"""Cluster maintenance coordinator (CMS) related library functions and classes."""
import getpass
import logging
import math
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import total_ordering
from typing import Any, Callable, Dict, Iterator, Optional

import requests
from spicerack.decorators import retry

from clusterops.libs.common import ArgparsableEnum, ClusterOpsConfig
from clusterops.libs.nodes import Node, NodeCatalog

LOGGER = logging.getLogger(__name__)
MIN_POLL_INTERVAL_SECONDS = 0.5


class MaintenanceError(Exception):
    """Parent exception for all the maintenance coordinator issues."""


class MaintenanceTransportError(MaintenanceError):
    """Risen when the coordinator could not be reached or replied with an error."""


class MaintenanceMalformedReply(MaintenanceError):
    """Risen when the coordinator reply is not what was expected."""


@total_ordering
class AvailabilityMode(ArgparsableEnum):
    """How strict the coordinator must be when deciding if a node can be taken out of service.

    Ordered by permissiveness, `strong` being the most conservative one.
    """

    STRONG = "strong"
    WEAK = "weak"
    FORCE = "force"

    @property
    def permissiveness(self) -> int:
        """Position of the mode in the permissiveness order, higher is more permissive."""
        return list(AvailabilityMode).index(self)

    def __lt__(self, other: "AvailabilityMode") -> bool:
        """Compare by permissiveness."""
        if not isinstance(other, AvailabilityMode):
            return NotImplemented

        return self.permissiveness < other.permissiveness

    def to_wire(self) -> str:
        """Name of the mode as the coordinator API expects it."""
        return f"AVAILABILITY_MODE_{self.name}"


class MaintenanceTaskState(Enum):
    """Lifecycle of a maintenance task."""

    REQUESTED = "requested"
    GRANTED = "granted"
    REJECTED = "rejected"
    RELEASED = "released"


@dataclass
class MaintenanceTask:
    """A time-boxed permission to take a node out of service."""

    node: Node
    duration: timedelta
    availability_mode: AvailabilityMode
    task_uid: Optional[str] = None
    state: MaintenanceTaskState = MaintenanceTaskState.REQUESTED
    reason: str = ""

    @property
    def granted(self) -> bool:
        """Whether the coordinator allowed the node to be restarted."""
        return self.state == MaintenanceTaskState.GRANTED


def _request(method: str, session: requests.Session, url: str, timeout=(3, 30), **kwargs) -> requests.Response:
    try:
        LOGGER.debug("%s to: %s -> %s", method, url, kwargs.get("json"))
        response = session.request(method, url, timeout=timeout, **kwargs)
        response.raise_for_status()
    except (
        requests.exceptions.ConnectTimeout,
        requests.exceptions.ReadTimeout,
        requests.exceptions.ConnectionError,
        requests.exceptions.SSLError,
    ) as error:
        raise MaintenanceTransportError(f"{method} {url}: {error}") from error
    except requests.exceptions.HTTPError as error:
        raise MaintenanceTransportError(f"{method} {url} ({response.status_code}): {response.text}") from error

    return response


def _json(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as error:
        raise MaintenanceMalformedReply(f"Unable to parse reply from {response.url}:\n{response.text}") from error

    if not isinstance(data, dict):
        raise MaintenanceMalformedReply(f"Was expecting a dict from {response.url}, got {data}")

    return data


class CMSHTTPAPI:
    """Thin wrapper over the coordinator HTTP API."""

    def __init__(self, base_url: str, session: requests.Session, timeout=(3, 30)):
        """Init."""
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: ClusterOpsConfig) -> "CMSHTTPAPI":
        """Get an API instance from the site config."""
        session = requests.Session()
        session.headers.update({"User-Agent": f"clusterops-cookbooks ({getpass.getuser()}@{socket.gethostname()})"})
        if config.cms_token:
            session.headers.update({"Authorization": f"Bearer {config.cms_token}"})
        if config.ca_bundle:
            session.verify = config.ca_bundle

        return cls(base_url=config.cms_url, session=session)

    @retry(tries=3, delay=timedelta(seconds=2), backoff_mode="constant", exceptions=(MaintenanceTransportError,))
    def list_nodes(self) -> Dict[str, Any]:
        """Get the nodes of the cluster."""
        return _json(_request("GET", self._session, f"{self.base_url}/cluster/nodes", timeout=self._timeout))

    def create_task(self, node: Node, availability_mode: AvailabilityMode, duration: timedelta) -> Dict[str, Any]:
        """Ask the coordinator for a maintenance task on the given node."""
        payload = {
            "node_id": node.node_id,
            "host": node.host,
            "availability_mode": availability_mode.to_wire(),
            "duration_seconds": int(duration.total_seconds()),
            "description": f"rolling restart from {getpass.getuser()}@{socket.gethostname()}",
        }
        return _json(
            _request("POST", self._session, f"{self.base_url}/maintenance/tasks", timeout=self._timeout, json=payload)
        )

    @retry(tries=3, delay=timedelta(seconds=2), backoff_mode="constant", exceptions=(MaintenanceTransportError,))
    def refresh_task(self, task_uid: str) -> Dict[str, Any]:
        """Get the current status of a maintenance task."""
        return _json(
            _request("GET", self._session, f"{self.base_url}/maintenance/tasks/{task_uid}", timeout=self._timeout)
        )

    def drop_task(self, task_uid: str) -> None:
        """Drop a maintenance task, giving the node back to the cluster."""
        _request("DELETE", self._session, f"{self.base_url}/maintenance/tasks/{task_uid}", timeout=self._timeout)


class MaintenanceCoordinatorClient:
    """Negotiates maintenance tasks with the cluster coordinator.

    A rejection is an expected answer from the coordinator and is returned as a rejected task, only transport
    problems are raised.
    """

    def __init__(
        self,
        api: CMSHTTPAPI,
        request_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Init."""
        self._api = api
        self.request_timeout_seconds = request_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    def list_nodes(self) -> NodeCatalog:
        """Get the current snapshot of the cluster nodes."""
        return NodeCatalog.from_json_data(self._api.list_nodes())

    @staticmethod
    def _apply_reply(task: MaintenanceTask, reply: Dict[str, Any]) -> str:
        if reply.get("task_uid"):
            task.task_uid = str(reply["task_uid"])

        status = reply.get("status")
        if status == "granted":
            task.state = MaintenanceTaskState.GRANTED
        elif status == "rejected":
            task.state = MaintenanceTaskState.REJECTED
            task.reason = reply.get("reason") or "rejected by the coordinator"
        elif status != "pending":
            raise MaintenanceMalformedReply(f"Unknown maintenance task status in reply: {reply}")

        return status

    def request_maintenance(
        self, node: Node, availability_mode: AvailabilityMode, duration: timedelta
    ) -> MaintenanceTask:
        """Request a maintenance task for the node and wait until the coordinator takes a decision."""
        task = MaintenanceTask(node=node, duration=duration, availability_mode=availability_mode)
        LOGGER.info(
            "Requesting maintenance for %s, mode %s, for %d seconds",
            node,
            availability_mode,
            duration.total_seconds(),
        )
        reply = self._api.create_task(node=node, availability_mode=availability_mode, duration=duration)
        status = self._apply_reply(task=task, reply=reply)
        if status != "pending":
            self._log_decision(task)
            return task

        if task.task_uid is None:
            raise MaintenanceMalformedReply(f"Pending maintenance task without task_uid: {reply}")

        start_time = self._clock()
        while self._clock() - start_time < self.request_timeout_seconds:
            try:
                wait_seconds = self._get_wait_seconds(reply)
                LOGGER.debug("Maintenance task %s still pending, checking again in %.1fs", task.task_uid, wait_seconds)
                self._sleep(wait_seconds)
                reply = self._api.refresh_task(task_uid=task.task_uid)
                status = self._apply_reply(task=task, reply=reply)
            except MaintenanceError:
                self._drop(task)
                raise

            if status != "pending":
                self._log_decision(task)
                return task

        LOGGER.warning(
            "The coordinator did not decide on maintenance task %s for %s in %.0f seconds, dropping it",
            task.task_uid,
            node,
            self.request_timeout_seconds,
        )
        self._drop(task)
        task.state = MaintenanceTaskState.REJECTED
        task.reason = f"no decision from the coordinator after {self.request_timeout_seconds:.0f} seconds"
        return task

    def _get_wait_seconds(self, reply: Dict[str, Any]) -> float:
        """How long to wait before polling again, the coordinator hint can only shorten the poll interval."""
        wait_seconds = self.poll_interval_seconds
        retry_after = reply.get("retry_after_seconds")
        if retry_after is not None:
            try:
                retry_after = float(retry_after)
                if math.isnan(retry_after):
                    raise ValueError("not a number")
                wait_seconds = min(retry_after, self.poll_interval_seconds)
            except (TypeError, ValueError) as error:
                raise MaintenanceMalformedReply(f"Invalid retry_after_seconds in reply: {reply}") from error

        return max(wait_seconds, MIN_POLL_INTERVAL_SECONDS)

    @staticmethod
    def _log_decision(task: MaintenanceTask) -> None:
        if task.granted:
            LOGGER.info("Maintenance task %s granted for %s", task.task_uid, task.node)
        else:
            LOGGER.info("Maintenance for %s rejected: %s", task.node, task.reason)

    def _drop(self, task: MaintenanceTask) -> None:
        if task.task_uid is None:
            return

        try:
            self._api.drop_task(task_uid=task.task_uid)
        except MaintenanceError as error:
            LOGGER.warning("Unable to drop maintenance task %s for %s: %s", task.task_uid, task.node, error)

    def release_maintenance(self, task: MaintenanceTask) -> None:
        """Give the node back to the cluster, failures are only logged."""
        if task.state != MaintenanceTaskState.GRANTED:
            LOGGER.debug("Not releasing maintenance task %s in state %s", task.task_uid, task.state.value)
            return

        LOGGER.info("Releasing maintenance task %s for %s", task.task_uid, task.node)
        self._drop(task)
        task.state = MaintenanceTaskState.RELEASED

    @contextmanager
    def maintenance(
        self, node: Node, availability_mode: AvailabilityMode, duration: timedelta
    ) -> Iterator[MaintenanceTask]:
        """Context manager that requests a maintenance task and always releases it when granted."""
        task = self.request_maintenance(node=node, availability_mode=availability_mode, duration=duration)
        try:
            yield task
        finally:
            self.release_maintenance(task)
