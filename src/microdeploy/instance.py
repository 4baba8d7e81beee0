"""Instance lifecycle module.

An Instance is one job (name/index) running on one VM. It sequences the
remote operations that bring the instance up, start its jobs and tear it
down, recording every step on a progress stage:

- delete: wait for agent (tolerated failure), stop jobs, unmount disks, delete VM
- start_jobs: apply agent state and start, wait for jobs to be running
- wait_until_ready: optional SSH tunnel, wait for the agent to answer

Every step opened here is closed (finished or failed) before the operation
returns or raises.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from datetime import timedelta
from enum import Enum

from microdeploy.deployment import ApplySpec, Deployment, max_attempts_for
from microdeploy.eventlog import StageHandle
from microdeploy.sshtunnel import SSHTunnelOptions, TunnelFactory, open_ssh_tunnel
from microdeploy.vm import VM, Disk

logger = logging.getLogger(__name__)

AGENT_READY_TIMEOUT = timedelta(minutes=10)
AGENT_READY_DELAY = timedelta(milliseconds=500)
RUNNING_POLL_DELAY = timedelta(seconds=1)


class InstanceError(Exception):
    """Raised when an instance lifecycle step fails."""

    pass


class StepPolicy(Enum):
    """What a failed step does to the enclosing operation."""

    ABORT = "abort"
    TOLERATE = "tolerate"


def _raw_message(error: Exception) -> str:
    return str(error)


def _prefixed(prefix: str) -> Callable[[Exception], str]:
    return lambda error: f"{prefix}: {error}"


class Instance:
    """Lifecycle coordinator for one job instance on one VM."""

    def __init__(
        self,
        job_name: str,
        job_index: int,
        vm: VM,
        ssh_tunnel_factory: TunnelFactory,
    ):
        if job_index < 0:
            raise ValueError("job_index cannot be negative")
        self._job_name = job_name
        self._job_index = job_index
        self._vm = vm
        self._ssh_tunnel_factory = ssh_tunnel_factory

    @property
    def job_name(self) -> str:
        return self._job_name

    @property
    def job_index(self) -> int:
        return self._job_index

    @property
    def vm(self) -> VM:
        return self._vm

    def __repr__(self) -> str:
        return f"Instance({self._job_name}/{self._job_index}, vm={self._vm.cid})"

    def delete(self, ping_timeout: timedelta, ping_delay: timedelta, stage: StageHandle) -> None:
        """Tear down the instance and its VM.

        An unreachable agent is recorded but does not stop the teardown;
        every later failure aborts it.

        Args:
            ping_timeout: How long to wait for the agent
            ping_delay: Delay between agent pings
            stage: Progress stage to record steps on

        Raises:
            InstanceError: If unmounting a disk or deleting the VM fails
            Exception: The underlying error if stopping jobs fails
        """
        self._validate_durations(ping_timeout, ping_delay)
        vm = self._vm
        logger.info(f"Deleting instance {self._name()} on VM '{vm.cid}'")

        self._run_step(
            stage,
            f"Waiting for the agent on VM '{vm.cid}'",
            lambda: vm.wait_until_ready(ping_timeout, ping_delay),
            format_failure=_prefixed("Agent unreachable"),
            policy=StepPolicy.TOLERATE,
        )

        self._run_step(
            stage,
            f"Stopping jobs on instance '{self._name()}'",
            vm.stop,
            format_failure=_raw_message,
        )

        # Disks are unmounted one at a time in the order the VM reports them
        for disk in vm.list_disks():
            self._unmount_disk(disk, stage)

        self._run_step(
            stage,
            f"Deleting VM '{vm.cid}'",
            vm.delete,
            format_failure=_prefixed("Deleting VM"),
            wrap=True,
        )

    def start_jobs(self, apply_spec: ApplySpec, deployment: Deployment, stage: StageHandle) -> None:
        """Push agent state, start jobs and wait for them to run.

        Args:
            apply_spec: Desired agent state
            deployment: Deployment providing the update watch window
            stage: Progress stage to record steps on

        Raises:
            InstanceError: If applying state or starting the agent fails
            Exception: The underlying error if jobs never report running
        """
        vm = self._vm
        logger.info(f"Starting jobs for instance {self._name()}")

        def apply_and_start() -> None:
            try:
                vm.apply(apply_spec)
            except Exception as e:
                raise InstanceError(f"Applying the agent state: {e}") from e
            try:
                vm.start()
            except Exception as e:
                raise InstanceError(f"Starting the agent: {e}") from e

        self._run_step(
            stage,
            f"Starting instance '{self._name()}'",
            apply_and_start,
            format_failure=_raw_message,
        )

        max_attempts = max_attempts_for(deployment.watch_time_for(self._job_name))
        logger.debug(
            f"Polling {self._name()} for running state: {max_attempts} attempt(s) "
            f"every {RUNNING_POLL_DELAY.total_seconds():g}s"
        )

        self._run_step(
            stage,
            f"Waiting for instance '{self._name()}' to be running",
            lambda: vm.wait_to_be_running(max_attempts, RUNNING_POLL_DELAY),
            format_failure=_raw_message,
        )

    def wait_until_ready(self, ssh_tunnel_options: SSHTunnelOptions, stage: StageHandle) -> None:
        """Wait for the VM agent, through an SSH tunnel when options are given.

        The tunnel is stopped before the step is closed, on every path. A
        tunnel that fails to start raises immediately without recording a step.

        Raises:
            SSHTunnelError: If the tunnel cannot be started
            Exception: The underlying error if the agent never becomes ready
        """
        vm = self._vm
        self._run_step(
            stage,
            f"Waiting for the agent on VM '{vm.cid}' to be ready",
            lambda: vm.wait_until_ready(AGENT_READY_TIMEOUT, AGENT_READY_DELAY),
            format_failure=_raw_message,
            scope=open_ssh_tunnel(self._ssh_tunnel_factory, ssh_tunnel_options),
        )

    def _unmount_disk(self, disk: Disk, stage: StageHandle) -> None:
        vm = self._vm
        self._run_step(
            stage,
            f"Unmounting disk '{disk.cid}'",
            lambda: vm.unmount_disk(disk),
            format_failure=_prefixed(f"Unmounting disk '{disk.cid}' from VM '{vm.cid}'"),
            wrap=True,
        )

    def _run_step(
        self,
        stage: StageHandle,
        name: str,
        action: Callable[[], None],
        format_failure: Callable[[Exception], str],
        policy: StepPolicy = StepPolicy.ABORT,
        wrap: bool = False,
        scope: AbstractContextManager | None = None,
    ) -> None:
        """Run action inside a named step.

        On failure the step is failed with format_failure(error). TOLERATE
        swallows the error; ABORT re-raises it, wrapped in InstanceError
        carrying the formatted message when wrap is set.

        When scope is given, it is entered before the step starts and exited
        before the step is closed. An error entering it records no step.
        """
        error: Exception | None = None
        with scope if scope is not None else nullcontext():
            step = stage.new_step(name)
            step.start()
            try:
                action()
            except Exception as e:
                error = e

        if error is None:
            step.finish()
            return

        message = format_failure(error)
        step.fail(message)

        if policy == StepPolicy.TOLERATE:
            logger.warning(f"{name}: {message} (continuing)")
            return

        logger.error(f"{name} failed: {message}")
        if wrap:
            raise InstanceError(message) from error
        raise error

    def _name(self) -> str:
        return f"{self._job_name}/{self._job_index}"

    @staticmethod
    def _validate_durations(timeout: timedelta, delay: timedelta) -> None:
        if timeout < timedelta(0) or delay < timedelta(0):
            raise ValueError("ping timeout and delay cannot be negative")


__all__ = [
    "AGENT_READY_DELAY",
    "AGENT_READY_TIMEOUT",
    "RUNNING_POLL_DELAY",
    "Instance",
    "InstanceError",
    "StepPolicy",
]
