"""Deployment model module.

Dataclasses for the parts of a deployment manifest the instance lifecycle
consumes, plus the apply spec pushed to the VM agent.

- Deployment: name, update policy, jobs
- WatchTime: millisecond window bounding the wait for a running instance
- ApplySpec: desired agent state for a job

Security:
- YAML safe loading only
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

POLL_INTERVAL_MS = 1000

_WATCH_TIME_RANGE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


class DeploymentError(Exception):
    """Raised when a deployment manifest is invalid."""

    pass


@dataclass(frozen=True)
class WatchTime:
    """Update watch window in milliseconds."""

    start: int
    end: int


@dataclass
class Update:
    update_watch_time: WatchTime = field(default_factory=lambda: WatchTime(0, 300000))


@dataclass
class Job:
    name: str
    persistent_disk_pool: str = ""
    instances: int = 1


@dataclass
class Deployment:
    """Deployment manifest subset."""

    name: str = ""
    update: Update = field(default_factory=Update)
    jobs: list[Job] = field(default_factory=list)

    def job(self, name: str) -> Job | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    def watch_time_for(self, job_name: str) -> WatchTime:
        """Get the update watch window that applies to a job.

        The window is deployment-wide; an unknown job name still gets it.
        """
        if self.job(job_name) is None:
            logger.debug(f"Job '{job_name}' not in deployment; using deployment watch time")
        return self.update.update_watch_time


@dataclass
class ApplyJob:
    name: str
    templates: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ApplySpec:
    """Desired agent state for one instance."""

    job: ApplyJob
    deployment: str = ""
    index: int = 0
    packages: dict[str, Any] = field(default_factory=dict)
    networks: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the agent's apply payload."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApplySpec":
        """Build an apply spec from its JSON form.

        Raises:
            DeploymentError: If the data is not a mapping or a field is malformed
        """
        if not isinstance(data, dict):
            raise DeploymentError(f"Apply spec must be a mapping, got {type(data).__name__}")
        job_data = data.get("job") or {}
        if not isinstance(job_data, dict) or not job_data.get("name"):
            raise DeploymentError("Apply spec must contain 'job.name'")
        return cls(
            job=ApplyJob(name=job_data["name"], templates=job_data.get("templates", [])),
            deployment=data.get("deployment", ""),
            index=_parse_int(data.get("index", 0), "index"),
            packages=data.get("packages", {}),
            networks=data.get("networks", {}),
            properties=data.get("properties", {}),
        )


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise DeploymentError(f"Invalid {name}: {value!r} (expected an integer)")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise DeploymentError(f"Invalid {name}: {value!r} (expected an integer)") from e


def max_attempts_for(watch_time: WatchTime) -> int:
    """Number of one-second polls that fit in a watch window.

    Example:
        >>> max_attempts_for(WatchTime(0, 5478))
        5
    """
    window = watch_time.end - watch_time.start
    if window <= 0:
        return 0
    return window // POLL_INTERVAL_MS


def parse_watch_time(value: Any) -> WatchTime:
    """Parse a watch time from "start-end" text or a {start, end} mapping.

    Raises:
        DeploymentError: If the value cannot be parsed
    """
    if isinstance(value, dict):
        try:
            return WatchTime(start=int(value["start"]), end=int(value["end"]))
        except (KeyError, TypeError, ValueError) as e:
            raise DeploymentError(f"Invalid watch time mapping: {value}") from e

    if isinstance(value, int):
        return WatchTime(start=value, end=value)

    if isinstance(value, str):
        match = _WATCH_TIME_RANGE.match(value)
        if match:
            return WatchTime(start=int(match.group(1)), end=int(match.group(2)))

    raise DeploymentError(f"Invalid watch time: {value!r} (expected 'start-end')")


def load_deployment(path: Path) -> Deployment:
    """Load a deployment manifest from YAML.

    Raises:
        DeploymentError: If the file is missing or malformed
    """
    if not path.exists():
        raise DeploymentError(f"Deployment manifest not found: {path}")

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise DeploymentError(f"Failed to parse YAML: {e}") from e

    if not isinstance(data, dict):
        raise DeploymentError("Deployment manifest must be a mapping")

    update_data = data.get("update") or {}
    if not isinstance(update_data, dict):
        raise DeploymentError("'update' must be a mapping")
    update = Update()
    if "update_watch_time" in update_data:
        update = Update(update_watch_time=parse_watch_time(update_data["update_watch_time"]))

    jobs_data = data.get("jobs") or []
    if not isinstance(jobs_data, list):
        raise DeploymentError("'jobs' must be a list")

    jobs = []
    for job_data in jobs_data:
        if not isinstance(job_data, dict) or "name" not in job_data:
            raise DeploymentError("Each job must be a mapping with a 'name'")
        jobs.append(
            Job(
                name=job_data["name"],
                persistent_disk_pool=job_data.get("persistent_disk_pool", ""),
                instances=_parse_int(
                    job_data.get("instances", 1), f"instances for job '{job_data['name']}'"
                ),
            )
        )

    return Deployment(name=data.get("name", ""), update=update, jobs=jobs)


__all__ = [
    "ApplyJob",
    "ApplySpec",
    "Deployment",
    "DeploymentError",
    "Job",
    "Update",
    "WatchTime",
    "load_deployment",
    "max_attempts_for",
    "parse_watch_time",
]
