"""
Sandbox orchestrator.

Drives the container backend through the sandbox lifecycle and keeps the
registry (the `sandboxes` table) in step with what the backend reports:

    created -> running -> {stopped, paused} -> running -> deleted

Lifecycle operations are target-state idempotent: stopping a stopped sandbox
succeeds without touching the backend. The registry is only written after the
backend confirms an operation. Operations on the same sandbox are serialised
with a per-sandbox lock; different sandboxes proceed concurrently.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from capsule.config import Settings
from capsule.core.backend import ContainerBackend, ProgressCallback
from capsule.core.streams import Stream
from capsule.db.database import Database
from capsule.lib.errors import (
    ConflictError,
    InvalidStateError,
    NetworkNotFoundError,
    SandboxNotFoundError,
)
from capsule.models.sandbox import (
    TRANSITIONS,
    ContainerInfo,
    DockerInfo,
    ExecOptions,
    ExecResult,
    ImageInfo,
    LogOptions,
    NetworkInfo,
    Sandbox,
    SandboxAction,
    SandboxConfig,
    SandboxFilter,
    SandboxStats,
    SandboxStatus,
)

logger = logging.getLogger(__name__)


class SandboxOrchestrator:
    """Lifecycle, inspection and reconciliation of sandboxes."""

    def __init__(self, backend: ContainerBackend, database: Database, settings: Settings):
        self.backend = backend
        self.database = database
        self.settings = settings
        # Per-sandbox locks so concurrent requests on one sandbox don't interleave
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def create_sandbox(self, config: SandboxConfig) -> Sandbox:
        """Provision and start a sandbox.

        The registry row is written once the container exists (status
        created) and moved to running after the backend confirms the start.
        If the start fails the row stays `created` and the error propagates.
        """
        sandbox_id = config.id or uuid.uuid4().hex[:12]
        image = config.image or self.settings.default_image
        network = config.network or self.settings.default_network

        async with self._locks[sandbox_id]:
            if await self.database.get_sandbox(sandbox_id) is not None:
                raise ConflictError(f"Sandbox already exists: {sandbox_id}")

            await self.backend.ensure_network(network)
            container = await self.backend.create_container(
                sandbox_id, config, image, network, config.resolved_resources()
            )

            now = datetime.now(timezone.utc)
            await self.database.create_sandbox(
                Sandbox(
                    id=sandbox_id,
                    owner_id=config.owner_id,
                    name=config.name,
                    status=SandboxStatus.CREATED,
                    container_id=container.container_id,
                    image=image,
                    urls=dict(config.urls),
                    labels=dict(config.labels),
                    created_at=now,
                    updated_at=now,
                )
            )
            logger.info(
                f"Registered sandbox {sandbox_id} ({config.name})",
                extra={"sandbox_id": sandbox_id},
            )

            await self.backend.start_container(sandbox_id)
            sandbox = await self.database.update_sandbox_state(
                sandbox_id,
                SandboxStatus.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
            logger.info(f"Started sandbox {sandbox_id}", extra={"sandbox_id": sandbox_id})
            return sandbox  # type: ignore

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_sandbox(self, sandbox_id: str) -> Sandbox:
        return await self._transition(sandbox_id, SandboxAction.START)

    async def stop_sandbox(self, sandbox_id: str, timeout: Optional[int] = None) -> Sandbox:
        return await self._transition(sandbox_id, SandboxAction.STOP, timeout=timeout)

    async def restart_sandbox(self, sandbox_id: str, timeout: Optional[int] = None) -> Sandbox:
        return await self._transition(sandbox_id, SandboxAction.RESTART, timeout=timeout)

    async def pause_sandbox(self, sandbox_id: str) -> Sandbox:
        return await self._transition(sandbox_id, SandboxAction.PAUSE)

    async def unpause_sandbox(self, sandbox_id: str) -> Sandbox:
        return await self._transition(sandbox_id, SandboxAction.UNPAUSE)

    async def delete_sandbox(self, sandbox_id: str, remove_volumes: bool = False) -> None:
        """Remove the container, then the registry row. Chat history is kept."""
        async with self._locks[sandbox_id]:
            registered = await self.database.get_sandbox(sandbox_id)
            try:
                await self.backend.remove_container(sandbox_id, remove_volumes=remove_volumes)
            except SandboxNotFoundError:
                # Container already gone: still clear a stale registry row
                if registered is None:
                    raise
                logger.warning(
                    f"Container for {sandbox_id} already absent; removing registry row",
                    extra={"sandbox_id": sandbox_id},
                )

            await self.database.delete_sandbox(sandbox_id)
            logger.info(f"Deleted sandbox {sandbox_id}", extra={"sandbox_id": sandbox_id})

    async def _transition(
        self,
        sandbox_id: str,
        action: SandboxAction,
        timeout: Optional[int] = None,
    ) -> Sandbox:
        transition = TRANSITIONS[action]
        target = transition.target
        if target is None:
            raise InvalidStateError(f"Use delete_sandbox to {action.value} sandbox {sandbox_id}")
        grace = timeout if timeout is not None else self.settings.stop_timeout_seconds

        async with self._locks[sandbox_id]:
            sandbox = await self._require_registered(sandbox_id)
            current = await self._observe(sandbox)

            try:
                needed = transition.check(current)
            except ValueError:
                raise InvalidStateError(
                    f"Cannot {action.value} sandbox {sandbox_id} while {current.value}"
                )

            if not needed:
                logger.debug(f"{action.value} on {sandbox_id}: already {current.value}")
                return await self._record(sandbox_id, current)

            if action == SandboxAction.START:
                await self.backend.start_container(sandbox_id)
            elif action == SandboxAction.STOP:
                await self.backend.stop_container(sandbox_id, grace)
            elif action == SandboxAction.RESTART:
                await self.backend.restart_container(sandbox_id, grace)
            elif action == SandboxAction.PAUSE:
                await self.backend.pause_container(sandbox_id)
            elif action == SandboxAction.UNPAUSE:
                await self.backend.unpause_container(sandbox_id)

            started_at = (
                datetime.now(timezone.utc)
                if action in (SandboxAction.START, SandboxAction.RESTART)
                else None
            )
            updated = await self.database.update_sandbox_state(
                sandbox_id, target, started_at=started_at
            )
            logger.info(
                f"Sandbox {sandbox_id}: {current.value} -> {target.value}",
                extra={"sandbox_id": sandbox_id},
            )
            return updated  # type: ignore

    # =========================================================================
    # Inspection
    # =========================================================================

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        """Registry row refreshed with the live status."""
        sandbox = await self._require_registered(sandbox_id)
        status = await self._observe(sandbox)
        if status != sandbox.status:
            return await self._record(sandbox_id, status)
        return sandbox

    async def get_sandbox_status(self, sandbox_id: str) -> SandboxStatus:
        return (await self.get_sandbox(sandbox_id)).status

    async def sandbox_exists(self, sandbox_id: str) -> bool:
        return await self.database.get_sandbox(sandbox_id) is not None

    async def list_sandboxes(self, filter: Optional[SandboxFilter] = None) -> list[Sandbox]:
        """List registered sandboxes matching every given criterion.

        Statuses are refreshed from one backend listing before filtering.
        """
        filter = filter or SandboxFilter()
        sandboxes = await self.database.list_sandboxes(owner_id=filter.owner_id)
        live = {c.sandbox_id: c for c in await self.backend.list_containers() if c.sandbox_id}

        refreshed = []
        for sandbox in sandboxes:
            container = live.get(sandbox.id)
            status = container.status if container else SandboxStatus.UNKNOWN
            if status != sandbox.status:
                sandbox = await self._record(sandbox.id, status)
            refreshed.append(sandbox)

        return [s for s in refreshed if filter.matches(s)]

    async def get_sandbox_stats(self, sandbox_id: str) -> SandboxStats:
        await self._require_registered(sandbox_id)
        return await self.backend.container_stats(sandbox_id)

    async def get_logs(self, sandbox_id: str, options: Optional[LogOptions] = None) -> str:
        await self._require_registered(sandbox_id)
        return await self.backend.container_logs(sandbox_id, options or LogOptions())

    async def stream_logs(
        self, sandbox_id: str, options: Optional[LogOptions] = None
    ) -> Stream[str]:
        """Follow container output. Close the returned stream to stop following."""
        sandbox = await self._require_registered(sandbox_id)
        if await self.backend.inspect_container(sandbox_id) is None:
            await self._record(sandbox.id, SandboxStatus.UNKNOWN)
            raise SandboxNotFoundError(sandbox_id)
        return Stream(
            self.backend.follow_logs(sandbox_id, options or LogOptions()),
            name=f"logs-{sandbox_id}",
        )

    async def exec(
        self,
        sandbox_id: str,
        command: list[str],
        options: Optional[ExecOptions] = None,
    ) -> ExecResult:
        """Run a command in a running sandbox. A non-zero exit is a normal result."""
        if not command:
            raise InvalidStateError("Command must not be empty")
        sandbox = await self.get_sandbox(sandbox_id)
        if sandbox.status != SandboxStatus.RUNNING:
            raise InvalidStateError(
                f"Cannot exec in sandbox {sandbox_id} while {sandbox.status.value}"
            )
        return await self.backend.exec_in_container(sandbox_id, command, options or ExecOptions())

    def resolve_runtime_url(self, sandbox: Sandbox) -> str:
        """Base URL of the agent runtime inside a sandbox."""
        if sandbox.urls.get("runtime"):
            return sandbox.urls["runtime"].rstrip("/")
        return f"http://{self.settings.container_prefix}-{sandbox.id}:{self.settings.runtime_port}"

    # =========================================================================
    # Images, networks, daemon
    # =========================================================================

    async def pull_image(self, name: str, on_progress: Optional[ProgressCallback] = None) -> None:
        await self.backend.pull_image(name, on_progress)

    async def image_exists(self, name: str) -> bool:
        return await self.backend.inspect_image(name) is not None

    async def get_image(self, name: str) -> Optional[ImageInfo]:
        return await self.backend.inspect_image(name)

    async def list_images(self, reference: Optional[str] = None) -> list[ImageInfo]:
        return await self.backend.list_images(reference)

    async def remove_image(self, name: str, force: bool = False) -> None:
        await self.backend.remove_image(name, force=force)

    async def ensure_network(self, name: Optional[str] = None) -> str:
        return await self.backend.ensure_network(name or self.settings.default_network)

    async def get_network(self, name: Optional[str] = None) -> NetworkInfo:
        network_name = name or self.settings.default_network
        network = await self.backend.inspect_network(network_name)
        if network is None:
            raise NetworkNotFoundError(network_name)
        return network

    async def health_check(self) -> bool:
        return await self.backend.ping()

    async def get_info(self) -> DockerInfo:
        return await self.backend.info()

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> dict[str, int]:
        """Refresh every registry row from the backend on server startup.

        Rows whose container vanished become `unknown`. Managed containers
        without a registry row are logged and left alone.
        """
        if not await self.backend.ping():
            logger.warning("Container backend unavailable, skipping reconcile")
            return {"updated": 0, "orphans": 0}

        containers = await self.backend.list_containers()
        live: dict[str, ContainerInfo] = {c.sandbox_id: c for c in containers if c.sandbox_id}
        sandboxes = await self.database.list_sandboxes()

        updated = 0
        for sandbox in sandboxes:
            container = live.pop(sandbox.id, None)
            status = container.status if container else SandboxStatus.UNKNOWN
            if status != sandbox.status:
                async with self._locks[sandbox.id]:
                    await self._record(sandbox.id, status)
                updated += 1
                logger.info(
                    f"Reconciled {sandbox.id}: {sandbox.status.value} -> {status.value}",
                    extra={"sandbox_id": sandbox.id},
                )

        if live:
            logger.info(
                f"Unregistered managed containers present: {', '.join(c.name for c in live.values())}"
            )

        logger.info(f"Reconcile complete: {len(sandboxes)} sandbox(es), {updated} updated")
        return {"updated": updated, "orphans": len(live)}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_registered(self, sandbox_id: str) -> Sandbox:
        sandbox = await self.database.get_sandbox(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        return sandbox

    async def _observe(self, sandbox: Sandbox) -> SandboxStatus:
        """Live status from the backend; unknown when the container is gone."""
        container = await self.backend.inspect_container(sandbox.id)
        if container is None:
            return SandboxStatus.UNKNOWN
        if sandbox.container_id and container.container_id and not (
            container.container_id.startswith(sandbox.container_id)
            or sandbox.container_id.startswith(container.container_id)
        ):
            logger.warning(
                f"Sandbox {sandbox.id} container changed underneath the registry "
                f"({sandbox.container_id[:12]} -> {container.container_id[:12]})"
            )
            return SandboxStatus.UNKNOWN
        return container.status

    async def _record(self, sandbox_id: str, status: SandboxStatus) -> Sandbox:
        sandbox = await self.database.update_sandbox_state(sandbox_id, status)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        return sandbox
