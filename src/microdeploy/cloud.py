"""Cloud backend module.

VM deletion through the Azure CLI. The agent cannot delete the machine it
runs on, so teardown of the VM itself goes through the cloud.

Security:
- No shell=True
- Input validation
- Timeout enforcement
"""

import logging
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)


class CloudError(Exception):
    """Raised when a cloud operation fails."""

    pass


class Cloud(Protocol):
    def delete_vm(self, vm_cid: str) -> None: ...


class AzureCloud:
    """Delete VMs with `az vm delete`."""

    DELETE_TIMEOUT = 600

    def __init__(self, resource_group: str | None = None, timeout: int = DELETE_TIMEOUT):
        self.resource_group = resource_group
        self.timeout = timeout

    def delete_vm(self, vm_cid: str) -> None:
        """Delete a VM by CID.

        A CID starting with /subscriptions/ is used as a resource ID;
        anything else is a VM name inside the configured resource group.

        Raises:
            CloudError: If the az command fails or times out
        """
        cmd = ["az", "vm", "delete", "--yes"] + self._target_args(vm_cid)
        logger.info(f"Deleting VM: {vm_cid}")

        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=True)
        except subprocess.CalledProcessError as e:
            raise CloudError(f"az vm delete failed: {(e.stderr or '').strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise CloudError(f"az vm delete timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise CloudError("Azure CLI (az) not found on PATH") from e

    def _target_args(self, vm_cid: str) -> list[str]:
        if not vm_cid:
            raise CloudError("VM CID cannot be empty")

        if vm_cid.startswith("/subscriptions/"):
            return ["--ids", vm_cid]

        if not self.resource_group:
            raise CloudError(f"Resource group required to delete VM by name: {vm_cid}")
        return ["--name", vm_cid, "--resource-group", self.resource_group]


__all__ = ["AzureCloud", "Cloud", "CloudError"]
