"""
Sandbox data models.

A sandbox is one container running the agent runtime. The registry row
(Sandbox) is the system of record; ContainerInfo is what the container
backend reports about the live container.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


class SandboxStatus(str, Enum):
    """Lifecycle status of a sandbox."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"  # Backend could not classify, or the container vanished


class SandboxAction(str, Enum):
    """Lifecycle operations that move a sandbox between states."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    DELETE = "delete"


@dataclass(frozen=True)
class Transition:
    """One row of the lifecycle table.

    allowed: source states the action may run from
    noop: source states where the target is already reached (idempotent success)
    target: resulting state, or None when the sandbox is removed
    """

    allowed: frozenset[SandboxStatus]
    noop: frozenset[SandboxStatus]
    target: Optional[SandboxStatus]

    def check(self, current: SandboxStatus) -> bool:
        """Return True when the action must run, False when it is a no-op.

        Raises ValueError when the action is not allowed from ``current``.
        """
        if current in self.noop:
            return False
        if current in self.allowed:
            return True
        raise ValueError(current)


_S = SandboxStatus

TRANSITIONS: dict[SandboxAction, Transition] = {
    SandboxAction.START: Transition(
        allowed=frozenset({_S.CREATED, _S.STOPPED, _S.UNKNOWN}),
        noop=frozenset({_S.RUNNING}),
        target=_S.RUNNING,
    ),
    SandboxAction.STOP: Transition(
        allowed=frozenset({_S.RUNNING, _S.PAUSED, _S.UNKNOWN}),
        noop=frozenset({_S.STOPPED, _S.CREATED}),
        target=_S.STOPPED,
    ),
    SandboxAction.RESTART: Transition(
        allowed=frozenset({_S.RUNNING, _S.STOPPED, _S.CREATED, _S.UNKNOWN}),
        noop=frozenset(),
        target=_S.RUNNING,
    ),
    SandboxAction.PAUSE: Transition(
        allowed=frozenset({_S.RUNNING, _S.UNKNOWN}),
        noop=frozenset({_S.PAUSED}),
        target=_S.PAUSED,
    ),
    SandboxAction.UNPAUSE: Transition(
        allowed=frozenset({_S.PAUSED, _S.UNKNOWN}),
        noop=frozenset({_S.RUNNING}),
        target=_S.RUNNING,
    ),
    SandboxAction.DELETE: Transition(
        allowed=frozenset(SandboxStatus),
        noop=frozenset(),
        target=None,
    ),
}


class ResourceLimits(BaseModel):
    """Container resource limits."""

    cpus: float = Field(default=1.0, description="CPU cores")
    memory: str = Field(default="2g", description="Memory limit in docker notation")
    pids_limit: int = Field(
        default=256,
        alias="pidsLimit",
        serialization_alias="pidsLimit",
        description="Maximum number of processes",
    )

    model_config = {"populate_by_name": True}


# Named resource tiers; "builder" is the default
RESOURCE_TIERS: dict[str, ResourceLimits] = {
    "starter": ResourceLimits(cpus=0.5, memory="512m", pids_limit=100),
    "builder": ResourceLimits(cpus=1.0, memory="2g", pids_limit=256),
    "creator": ResourceLimits(cpus=2.0, memory="4g", pids_limit=512),
    "power": ResourceLimits(cpus=4.0, memory="8g", pids_limit=1024),
}
DEFAULT_TIER = "builder"


class SandboxConfig(BaseModel):
    """Request to provision a sandbox."""

    id: Optional[str] = Field(
        default=None,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$",
        max_length=64,
        description="Sandbox ID; generated when omitted",
    )
    name: str = Field(min_length=1, max_length=128, description="Display name")
    image: Optional[str] = Field(default=None, description="Container image; server default when omitted")
    owner_id: Optional[str] = Field(
        default=None,
        alias="ownerId",
        serialization_alias="ownerId",
        description="Owning user",
    )
    labels: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    urls: dict[str, str] = Field(
        default_factory=dict,
        description="Named endpoints; 'runtime' is the agent runtime base URL",
    )
    ports: dict[int, int] = Field(
        default_factory=dict, description="Container port -> host port"
    )
    volumes: dict[str, str] = Field(
        default_factory=dict, description="Host path or volume name -> container path"
    )
    tier: Optional[str] = Field(default=None, description="Resource tier name")
    resources: Optional[ResourceLimits] = Field(
        default=None, description="Explicit limits; overrides tier"
    )
    network: Optional[str] = Field(default=None, description="Network name; server default when omitted")
    working_dir: Optional[str] = Field(
        default=None,
        alias="workingDir",
        serialization_alias="workingDir",
    )
    command: Optional[list[str]] = Field(default=None, description="Override image command")

    model_config = {"populate_by_name": True}

    def resolved_resources(self) -> ResourceLimits:
        if self.resources is not None:
            return self.resources
        return RESOURCE_TIERS.get(self.tier or DEFAULT_TIER, RESOURCE_TIERS[DEFAULT_TIER])


class Sandbox(BaseModel):
    """A registered sandbox."""

    id: str = Field(description="Sandbox ID")
    owner_id: Optional[str] = Field(
        default=None,
        alias="ownerId",
        serialization_alias="ownerId",
    )
    name: str = Field(description="Display name")
    status: SandboxStatus = Field(default=SandboxStatus.CREATED)
    container_id: Optional[str] = Field(
        default=None,
        alias="containerId",
        serialization_alias="containerId",
        description="Backend container ID, immutable once set",
    )
    image: str = Field(description="Container image")
    urls: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt", serialization_alias="createdAt")
    started_at: Optional[datetime] = Field(
        default=None,
        alias="startedAt",
        serialization_alias="startedAt",
    )
    updated_at: datetime = Field(alias="updatedAt", serialization_alias="updatedAt")

    model_config = {"from_attributes": True, "populate_by_name": True}


class ContainerInfo(BaseModel):
    """Live container state as reported by the backend."""

    container_id: str = Field(alias="containerId", serialization_alias="containerId")
    name: str
    sandbox_id: Optional[str] = Field(
        default=None,
        alias="sandboxId",
        serialization_alias="sandboxId",
    )
    status: SandboxStatus
    image: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    urls: dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = Field(
        default=None,
        alias="createdAt",
        serialization_alias="createdAt",
    )
    started_at: Optional[datetime] = Field(
        default=None,
        alias="startedAt",
        serialization_alias="startedAt",
    )

    model_config = {"populate_by_name": True}


class SandboxFilter(BaseModel):
    """Filter for listing sandboxes. All given criteria must match."""

    status: Optional[Union[SandboxStatus, list[SandboxStatus]]] = None
    name: Optional[str] = Field(default=None, description="Case-insensitive substring")
    labels: dict[str, str] = Field(default_factory=dict)
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    created_after: Optional[datetime] = Field(default=None, alias="createdAfter")
    created_before: Optional[datetime] = Field(default=None, alias="createdBefore")

    model_config = {"populate_by_name": True}

    def statuses(self) -> Optional[set[SandboxStatus]]:
        if self.status is None:
            return None
        if isinstance(self.status, list):
            return set(self.status)
        return {self.status}

    def matches(self, sandbox: Sandbox) -> bool:
        statuses = self.statuses()
        if statuses is not None and sandbox.status not in statuses:
            return False
        if self.name and self.name.lower() not in sandbox.name.lower():
            return False
        for key, value in self.labels.items():
            if sandbox.labels.get(key) != value:
                return False
        if self.owner_id is not None and sandbox.owner_id != self.owner_id:
            return False
        if self.created_after and sandbox.created_at <= self.created_after:
            return False
        if self.created_before and sandbox.created_at >= self.created_before:
            return False
        return True


class SandboxStats(BaseModel):
    """Point-in-time resource usage of a sandbox container."""

    cpu_percent: float = Field(default=0.0, serialization_alias="cpuPercent")
    memory_usage: int = Field(default=0, serialization_alias="memoryUsage")
    memory_limit: int = Field(default=0, serialization_alias="memoryLimit")
    memory_percent: float = Field(default=0.0, serialization_alias="memoryPercent")
    network_rx: int = Field(default=0, serialization_alias="networkRx")
    network_tx: int = Field(default=0, serialization_alias="networkTx")
    block_read: int = Field(default=0, serialization_alias="blockRead")
    block_write: int = Field(default=0, serialization_alias="blockWrite")
    pids: int = 0


class ExecOptions(BaseModel):
    working_dir: Optional[str] = Field(default=None, alias="workingDir")
    env: dict[str, str] = Field(default_factory=dict)
    user: Optional[str] = None
    timeout: float = Field(default=60.0, gt=0, description="Seconds before the exec is killed")

    model_config = {"populate_by_name": True}


class ExecResult(BaseModel):
    exit_code: int = Field(serialization_alias="exitCode")
    stdout: str = ""
    stderr: str = ""


class LogOptions(BaseModel):
    tail: Optional[int] = Field(default=100, ge=0, description="Lines from the end; None for all")
    since: Optional[datetime] = None
    timestamps: bool = False


class ImageInfo(BaseModel):
    id: str
    tags: list[str] = Field(default_factory=list)
    size: int = 0
    created: Optional[str] = None


class ImagePullProgress(BaseModel):
    status: str
    progress: Optional[str] = None
    id: Optional[str] = None


class NetworkInfo(BaseModel):
    id: str
    name: str
    driver: str = "bridge"
    scope: str = "local"
    internal: bool = False
    containers: list[str] = Field(default_factory=list)


class DockerInfo(BaseModel):
    """Container daemon version and inventory."""

    version: str = ""
    api_version: str = Field(default="", serialization_alias="apiVersion")
    os: str = ""
    arch: str = ""
    cpus: int = 0
    total_memory: int = Field(default=0, serialization_alias="totalMemory")
    containers_running: int = Field(default=0, serialization_alias="containersRunning")
    containers_stopped: int = Field(default=0, serialization_alias="containersStopped")
    images: int = 0
