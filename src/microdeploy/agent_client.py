"""Agent Client Module

Talk to the in-VM agent over its HTTP message bus.

Every request is a JSON POST to <endpoint>/agent:
    {"method": "<name>", "arguments": [...], "reply_to": "<id>"}
The agent answers with {"value": ...} or {"exception": {"message": ...}}.
Long-running methods (stop, apply, unmount_disk) answer with a task
handle that is polled with get_task until it leaves the "running" state.

Security Requirements:
- Basic auth credentials never logged
- Timeout on every request
"""

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

import requests

logger = logging.getLogger(__name__)


class AgentClientError(Exception):
    """Raised when an agent request fails or the agent reports an exception."""

    pass


class AgentClient:
    """HTTP client for one VM agent."""

    DEFAULT_TIMEOUT = 30
    TASK_POLL_DELAY = 0.5
    TASK_MAX_POLLS = 1200

    def __init__(
        self,
        endpoint: str,
        username: str = "",
        password: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize agent client.

        Args:
            endpoint: Agent base URL (e.g. https://10.0.0.6:6868)
            username: Basic auth user
            password: Basic auth password
            timeout: Per-request timeout in seconds
            session: Optional requests session (for connection reuse)
            sleep: Sleep function used between task polls
        """
        if not endpoint:
            raise AgentClientError("Agent endpoint cannot be empty")
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password)
        self.sleep = sleep

    def ping(self) -> str:
        return self._send("ping")

    def stop(self) -> None:
        self._send_async("stop")

    def start(self) -> None:
        self._send("start")

    def apply(self, spec: dict[str, Any]) -> None:
        self._send_async("apply", [spec])

    def get_state(self) -> dict[str, Any]:
        value = self._send("get_state")
        if not isinstance(value, dict):
            raise AgentClientError(f"Unexpected get_state response: {value!r}")
        return value

    def list_disk(self) -> list[str]:
        value = self._send("list_disk")
        return list(value or [])

    def unmount_disk(self, disk_cid: str) -> None:
        self._send_async("unmount_disk", [disk_cid])

    def _send_async(self, method: str, arguments: list[Any] | None = None) -> Any:
        value = self._send(method, arguments)

        if not isinstance(value, dict) or "agent_task_id" not in value:
            return value

        task_id = value["agent_task_id"]
        for _ in range(self.TASK_MAX_POLLS):
            if value.get("state") != "running":
                return value.get("value")
            self.sleep(self.TASK_POLL_DELAY)
            value = self._send("get_task", [task_id])
            if not isinstance(value, dict) or "agent_task_id" not in value:
                return value

        raise AgentClientError(f"Agent task '{task_id}' for {method} did not finish")

    def _send(self, method: str, arguments: list[Any] | None = None) -> Any:
        """
        Send one request to the agent.

        Returns:
            The "value" field of the agent response

        Raises:
            AgentClientError: On transport errors, non-200 responses, or agent exceptions
        """
        payload = {
            "method": method,
            "arguments": arguments or [],
            "reply_to": str(uuid.uuid4()),
        }
        url = f"{self.endpoint}/agent"
        logger.debug(f"Sending '{method}' to agent at {self.endpoint}")

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise AgentClientError(f"Sending '{method}' to the agent: {e}") from e

        if response.status_code != 200:
            raise AgentClientError(
                f"Agent responded to '{method}' with status {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AgentClientError(f"Agent returned invalid JSON for '{method}'") from e

        if not isinstance(body, dict):
            raise AgentClientError(f"Unexpected agent response for '{method}': {body!r}")

        exception = body.get("exception")
        if exception:
            message = exception
            if isinstance(exception, dict):
                message = exception.get("message", "unknown error")
            raise AgentClientError(f"Agent responded with error: {message}")

        return body.get("value")


__all__ = ["AgentClient", "AgentClientError"]
