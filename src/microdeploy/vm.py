"""VM handle module.

A VM handle controls one provisioned machine and the agent running on it:
- Waiting for the agent to answer pings
- Pushing desired state and starting/stopping jobs
- Listing and unmounting disks
- Deleting the machine

The VM Protocol is what the instance orchestrator consumes; AgentVM is the
production implementation backed by an AgentClient and a Cloud.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from microdeploy.agent_client import AgentClient, AgentClientError
from microdeploy.cloud import Cloud, CloudError
from microdeploy.deployment import ApplySpec
from microdeploy.retry import AttemptRetryStrategy, RetryError, TimeoutRetryStrategy

logger = logging.getLogger(__name__)


class VMError(Exception):
    """Raised when a VM operation fails."""

    pass


@dataclass(frozen=True)
class Disk:
    """Disk attached to a VM."""

    cid: str


class VM(Protocol):
    """Capability set the orchestrator needs from a VM."""

    @property
    def cid(self) -> str: ...

    def wait_until_ready(self, timeout: timedelta, delay: timedelta) -> None: ...

    def wait_to_be_running(self, max_attempts: int, delay: timedelta) -> None: ...

    def stop(self) -> None: ...

    def start(self) -> None: ...

    def apply(self, apply_spec: ApplySpec) -> None: ...

    def delete(self) -> None: ...

    def list_disks(self) -> list[Disk]: ...

    def unmount_disk(self, disk: Disk) -> None: ...


class VMManager(Protocol):
    def find_current(self) -> VM | None: ...

    def create(self, vm_cid: str) -> VM: ...


class AgentVM:
    """VM controlled through its agent, deleted through the cloud."""

    RUNNING_STATE = "running"

    def __init__(self, cid: str, agent_client: AgentClient, cloud: Cloud, sleep=None):
        """
        Args:
            cid: VM identifier
            agent_client: Client for the VM's agent
            cloud: Backend used to delete the VM
            sleep: Optional sleep function for wait loops (tests)
        """
        self._cid = cid
        self.agent_client = agent_client
        self.cloud = cloud
        self._sleep = sleep

    @property
    def cid(self) -> str:
        return self._cid

    def wait_until_ready(self, timeout: timedelta, delay: timedelta) -> None:
        """Ping the agent until it answers or the timeout elapses.

        Raises:
            VMError: If the agent never answers
        """
        strategy = TimeoutRetryStrategy(
            timeout=timeout,
            delay=delay,
            retryable=(AgentClientError,),
            name=f"agent on VM '{self.cid}'",
            **self._sleep_kwargs(),
        )

        def ping() -> bool:
            self.agent_client.ping()
            return True

        try:
            strategy.try_(ping)
        except RetryError as e:
            raise VMError(f"Waiting for agent ping: {e}") from e

    def wait_to_be_running(self, max_attempts: int, delay: timedelta) -> None:
        """Poll agent state until jobs report running.

        Raises:
            VMError: If jobs are not running within max_attempts polls
        """
        strategy = AttemptRetryStrategy(
            max_attempts=max_attempts,
            delay=delay,
            retryable=(AgentClientError,),
            name=f"jobs on VM '{self.cid}' to be running",
            **self._sleep_kwargs(),
        )

        def is_running() -> bool:
            state = self.agent_client.get_state()
            job_state = state.get("job_state", "")
            logger.debug(f"VM '{self.cid}' job_state={job_state}")
            return job_state == self.RUNNING_STATE

        try:
            strategy.try_(is_running)
        except RetryError as e:
            raise VMError(f"Waiting for jobs to be running: {e}") from e

    def stop(self) -> None:
        self._call("Stopping agent jobs", self.agent_client.stop)

    def start(self) -> None:
        self._call("Starting agent jobs", self.agent_client.start)

    def apply(self, apply_spec: ApplySpec) -> None:
        self._call("Sending apply message", lambda: self.agent_client.apply(apply_spec.to_dict()))

    def list_disks(self) -> list[Disk]:
        try:
            disk_cids = self.agent_client.list_disk()
        except AgentClientError as e:
            raise VMError(f"Listing disks: {e}") from e
        return [Disk(cid) for cid in disk_cids]

    def unmount_disk(self, disk: Disk) -> None:
        self._call(
            f"Unmounting disk '{disk.cid}'", lambda: self.agent_client.unmount_disk(disk.cid)
        )

    def delete(self) -> None:
        try:
            self.cloud.delete_vm(self.cid)
        except CloudError as e:
            raise VMError(f"Deleting VM '{self.cid}': {e}") from e

    def _call(self, action: str, fn) -> None:
        try:
            fn()
        except AgentClientError as e:
            raise VMError(f"{action}: {e}") from e

    def _sleep_kwargs(self) -> dict:
        return {"sleep": self._sleep} if self._sleep else {}


class AgentVMManager:
    """Build AgentVM handles that share one agent endpoint and cloud."""

    def __init__(self, agent_client: AgentClient, cloud: Cloud, current_vm_cid: str | None = None):
        self.agent_client = agent_client
        self.cloud = cloud
        self.current_vm_cid = current_vm_cid

    def find_current(self) -> AgentVM | None:
        if not self.current_vm_cid:
            return None
        return self.create(self.current_vm_cid)

    def create(self, vm_cid: str) -> AgentVM:
        if not vm_cid:
            raise VMError("VM CID cannot be empty")
        self.current_vm_cid = vm_cid
        return AgentVM(vm_cid, self.agent_client, self.cloud)


__all__ = ["AgentVM", "AgentVMManager", "Disk", "VM", "VMError", "VMManager"]
