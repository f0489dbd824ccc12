"""
Container backend interface.

The orchestrator talks to containers only through this contract. Containers
are addressed by sandbox ID; the backend owns the mapping to its own container
names and IDs. Implementations raise the capsule.lib.errors taxonomy:
SandboxNotFoundError for an unknown ref, NotProvisionableError when an image or
resource request is rejected, BackendUnavailableError when the daemon cannot
be reached or misbehaves.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional

from capsule.models.sandbox import (
    ContainerInfo,
    DockerInfo,
    ExecOptions,
    ExecResult,
    ImageInfo,
    ImagePullProgress,
    LogOptions,
    NetworkInfo,
    ResourceLimits,
    SandboxConfig,
    SandboxStats,
)

ProgressCallback = Callable[[ImagePullProgress], None]

# Labels applied to every managed container
LABEL_PREFIX = "capsule"
LABEL_MANAGED = f"{LABEL_PREFIX}.managed"
LABEL_SANDBOX_ID = f"{LABEL_PREFIX}.sandbox.id"
LABEL_SANDBOX_NAME = f"{LABEL_PREFIX}.sandbox.name"
LABEL_OWNER = f"{LABEL_PREFIX}.owner"
LABEL_URL_PREFIX = f"{LABEL_PREFIX}.url."


def build_labels(sandbox_id: str, config: SandboxConfig) -> dict[str, str]:
    """Labels identifying a managed sandbox container."""
    labels = dict(config.labels)
    labels[LABEL_MANAGED] = "true"
    labels[LABEL_SANDBOX_ID] = sandbox_id
    labels[LABEL_SANDBOX_NAME] = config.name
    if config.owner_id:
        labels[LABEL_OWNER] = config.owner_id
    for name, url in config.urls.items():
        labels[f"{LABEL_URL_PREFIX}{name}"] = url
    return labels


def urls_from_labels(labels: dict[str, str]) -> dict[str, str]:
    return {
        key[len(LABEL_URL_PREFIX):]: value
        for key, value in labels.items()
        if key.startswith(LABEL_URL_PREFIX)
    }


class ContainerBackend(ABC):
    """Operations the orchestrator needs from a container engine."""

    # Containers

    @abstractmethod
    async def create_container(
        self,
        sandbox_id: str,
        config: SandboxConfig,
        image: str,
        network: str,
        resources: ResourceLimits,
    ) -> ContainerInfo:
        """Create (but do not start) the container for a sandbox."""

    @abstractmethod
    async def start_container(self, sandbox_id: str) -> None: ...

    @abstractmethod
    async def stop_container(self, sandbox_id: str, timeout: int) -> None: ...

    @abstractmethod
    async def restart_container(self, sandbox_id: str, timeout: int) -> None: ...

    @abstractmethod
    async def pause_container(self, sandbox_id: str) -> None: ...

    @abstractmethod
    async def unpause_container(self, sandbox_id: str) -> None: ...

    @abstractmethod
    async def remove_container(self, sandbox_id: str, remove_volumes: bool = False) -> None: ...

    @abstractmethod
    async def inspect_container(self, sandbox_id: str) -> Optional[ContainerInfo]:
        """Live state of a sandbox's container, or None if it does not exist."""

    @abstractmethod
    async def list_containers(self) -> list[ContainerInfo]:
        """All managed containers, including stopped ones."""

    @abstractmethod
    async def container_stats(self, sandbox_id: str) -> SandboxStats: ...

    @abstractmethod
    async def container_logs(self, sandbox_id: str, options: LogOptions) -> str:
        """Bounded snapshot of recent output."""

    @abstractmethod
    def follow_logs(self, sandbox_id: str, options: LogOptions) -> AsyncIterator[str]:
        """Unbounded line iterator; closing it releases the underlying follower."""

    @abstractmethod
    async def exec_in_container(
        self, sandbox_id: str, command: list[str], options: ExecOptions
    ) -> ExecResult: ...

    # Images

    @abstractmethod
    async def pull_image(self, name: str, on_progress: Optional[ProgressCallback] = None) -> None: ...

    @abstractmethod
    async def inspect_image(self, name: str) -> Optional[ImageInfo]: ...

    @abstractmethod
    async def list_images(self, reference: Optional[str] = None) -> list[ImageInfo]: ...

    @abstractmethod
    async def remove_image(self, name: str, force: bool = False) -> None: ...

    # Networks

    @abstractmethod
    async def ensure_network(self, name: str) -> str:
        """Return the network ID, creating a bridge network if absent."""

    @abstractmethod
    async def inspect_network(self, name: str) -> Optional[NetworkInfo]: ...

    # Daemon

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def info(self) -> DockerInfo: ...
