"""
Docker CLI container backend.

Drives the local docker daemon through the `docker` executable using
asyncio subprocesses. Every call has a timeout; non-zero exits are translated
into capsule errors based on the daemon's stderr.

Container naming: <container_prefix>-<sandbox_id>
"""

import asyncio
import json
import logging
import re
import shutil
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from capsule.core.backend import (
    LABEL_MANAGED,
    LABEL_SANDBOX_ID,
    ContainerBackend,
    ProgressCallback,
    build_labels,
    urls_from_labels,
)
from capsule.lib.errors import (
    BackendUnavailableError,
    ConflictError,
    ImageNotFoundError,
    InvalidStateError,
    NotProvisionableError,
    SandboxNotFoundError,
)
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
    SandboxStatus,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_PATTERNS = ("no such container", "no such object")
_NOT_PROVISIONABLE_PATTERNS = (
    "unable to find image",
    "pull access denied",
    "manifest unknown",
    "repository does not exist",
    "invalid reference format",
    "minimum memory limit",
    "range of cpus",
    "invalid argument",
)
_DAEMON_DOWN_PATTERNS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)

_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}
_SIZE_RE = re.compile(r"^\s*([0-9.]+)\s*([a-zA-Z]*)\s*$")


def parse_size(value: str) -> int:
    """Parse docker's human-readable sizes ("12.5MiB", "1.2kB", "0B") to bytes."""
    match = _SIZE_RE.match(value or "")
    if not match:
        return 0
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower() or "b")
    if multiplier is None:
        return 0
    return int(float(number) * multiplier)


def _parse_pair(value: str) -> tuple[int, int]:
    """Parse "<a> / <b>" size pairs from docker stats."""
    left, _, right = (value or "").partition("/")
    return parse_size(left), parse_size(right)


def _parse_percent(value: str) -> float:
    try:
        return float((value or "0").strip().rstrip("%") or 0)
    except ValueError:
        return 0.0


def _parse_docker_time(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC 3339 timestamps with nanoseconds; zero time means unset."""
    if not value or value.startswith("0001-01-01"):
        return None
    value = value.replace("Z", "+00:00")
    # Truncate fractional seconds to microseconds for fromisoformat
    value = re.sub(r"(\.\d{6})\d+", r"\1", value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_label_string(raw: str) -> dict[str, str]:
    """Parse `docker ps` label output ("k=v,k2=v2")."""
    labels: dict[str, str] = {}
    for item in (raw or "").split(","):
        if "=" in item:
            key, value = item.split("=", 1)
            labels[key] = value
    return labels


def status_from_state(state: str, paused: bool = False) -> SandboxStatus:
    """Map a docker container state to a sandbox status."""
    state = (state or "").lower()
    if state == "running":
        return SandboxStatus.PAUSED if paused else SandboxStatus.RUNNING
    if state == "paused":
        return SandboxStatus.PAUSED
    if state == "created":
        return SandboxStatus.CREATED
    if state in ("exited", "dead"):
        return SandboxStatus.STOPPED
    return SandboxStatus.UNKNOWN


class DockerBackend(ContainerBackend):
    """Container backend using the docker CLI."""

    def __init__(
        self,
        container_prefix: str = "capsule",
        docker_binary: str = "docker",
        command_timeout: float = 60.0,
        pull_timeout: float = 900.0,
    ):
        self.container_prefix = container_prefix
        self.docker_binary = docker_binary
        self.command_timeout = command_timeout
        self.pull_timeout = pull_timeout

    def container_name(self, sandbox_id: str) -> str:
        return f"{self.container_prefix}-{sandbox_id}"

    # =========================================================================
    # Subprocess plumbing
    # =========================================================================

    async def _run(
        self, *args: str, timeout: Optional[float] = None
    ) -> tuple[int, str, str]:
        """Run a docker command, returning (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendUnavailableError(f"Docker CLI not available: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.command_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BackendUnavailableError(f"docker {args[0]} timed out")

        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def _check(self, *args: str, sandbox_id: Optional[str] = None, timeout: Optional[float] = None) -> str:
        """Run a docker command and translate failures. Returns stdout."""
        code, stdout, stderr = await self._run(*args, timeout=timeout)
        if code != 0:
            raise self._translate(args[0], stderr, sandbox_id)
        return stdout

    def _translate(self, command: str, stderr: str, sandbox_id: Optional[str]) -> Exception:
        message = stderr.strip() or f"docker {command} failed"
        lowered = message.lower()
        if sandbox_id is not None and any(p in lowered for p in _NOT_FOUND_PATTERNS):
            return SandboxNotFoundError(sandbox_id)
        if any(p in lowered for p in _DAEMON_DOWN_PATTERNS):
            return BackendUnavailableError(f"Docker daemon unavailable: {message}")
        if "is already in use" in lowered or "conflict" in lowered:
            return ConflictError(message)
        if "is paused" in lowered or "is not running" in lowered or "is not paused" in lowered:
            return InvalidStateError(message)
        if any(p in lowered for p in _NOT_PROVISIONABLE_PATTERNS):
            return NotProvisionableError(message)
        logger.warning(f"docker {command} failed: {message}")
        return BackendUnavailableError(message)

    def _loads(self, raw: str, what: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise BackendUnavailableError(f"Malformed {what} output from docker") from e

    def _json_lines(self, raw: str, what: str) -> list[dict[str, Any]]:
        items = []
        for line in raw.strip().split("\n"):
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse {what} JSON: {line[:100]}")
        return items

    # =========================================================================
    # Containers
    # =========================================================================

    async def create_container(
        self,
        sandbox_id: str,
        config: SandboxConfig,
        image: str,
        network: str,
        resources: ResourceLimits,
    ) -> ContainerInfo:
        """Create the container with labels, limits and hardening flags."""
        name = self.container_name(sandbox_id)
        args = [
            "create",
            "--init",  # tini as PID 1
            "--name", name,
            "--hostname", name,
            "--network", network,
            "--memory", resources.memory,
            "--memory-swap", resources.memory,  # no swap
            "--cpus", str(resources.cpus),
            "--pids-limit", str(resources.pids_limit),
            "--security-opt", "no-new-privileges",
            "--restart", "no",
        ]

        for key, value in build_labels(sandbox_id, config).items():
            args.extend(["--label", f"{key}={value}"])

        for key, value in config.env.items():
            args.extend(["-e", f"{key}={value}"])

        for container_port, host_port in config.ports.items():
            args.extend(["-p", f"{host_port}:{container_port}"])

        for source, target in config.volumes.items():
            args.extend(["-v", f"{source}:{target}"])

        if config.working_dir:
            args.extend(["-w", config.working_dir])

        args.append(image)
        if config.command:
            args.extend(config.command)

        stdout = await self._check(*args)
        container_id = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        logger.info(f"Created container {name} ({container_id[:12]}) from {image}")

        info = await self.inspect_container(sandbox_id)
        if info is None:
            raise BackendUnavailableError(f"Container {name} vanished after creation")
        return info

    async def start_container(self, sandbox_id: str) -> None:
        await self._check("start", self.container_name(sandbox_id), sandbox_id=sandbox_id)

    async def stop_container(self, sandbox_id: str, timeout: int) -> None:
        await self._check(
            "stop", "-t", str(timeout), self.container_name(sandbox_id),
            sandbox_id=sandbox_id,
            timeout=self.command_timeout + timeout,
        )

    async def restart_container(self, sandbox_id: str, timeout: int) -> None:
        await self._check(
            "restart", "-t", str(timeout), self.container_name(sandbox_id),
            sandbox_id=sandbox_id,
            timeout=self.command_timeout + timeout,
        )

    async def pause_container(self, sandbox_id: str) -> None:
        await self._check("pause", self.container_name(sandbox_id), sandbox_id=sandbox_id)

    async def unpause_container(self, sandbox_id: str) -> None:
        await self._check("unpause", self.container_name(sandbox_id), sandbox_id=sandbox_id)

    async def remove_container(self, sandbox_id: str, remove_volumes: bool = False) -> None:
        """Stop with a short grace period, then force-remove."""
        name = self.container_name(sandbox_id)
        code, _, stderr = await self._run("stop", "-t", "5", name)
        if code != 0 and any(p in stderr.lower() for p in _NOT_FOUND_PATTERNS):
            raise SandboxNotFoundError(sandbox_id)

        args = ["rm", "-f"]
        if remove_volumes:
            args.append("-v")
        args.append(name)
        await self._check(*args, sandbox_id=sandbox_id)
        logger.info(f"Removed container {name}")

    async def inspect_container(self, sandbox_id: str) -> Optional[ContainerInfo]:
        code, stdout, stderr = await self._run(
            "inspect", "--type", "container", self.container_name(sandbox_id)
        )
        if code != 0:
            if any(p in stderr.lower() for p in _NOT_FOUND_PATTERNS):
                return None
            raise self._translate("inspect", stderr, None)

        data = self._loads(stdout, "inspect")
        if not data:
            return None
        return self._container_from_inspect(data[0])

    def _container_from_inspect(self, data: dict[str, Any]) -> ContainerInfo:
        state = data.get("State") or {}
        labels = (data.get("Config") or {}).get("Labels") or {}
        return ContainerInfo(
            container_id=data.get("Id", ""),
            name=(data.get("Name") or "").lstrip("/"),
            sandbox_id=labels.get(LABEL_SANDBOX_ID),
            status=status_from_state(state.get("Status", ""), bool(state.get("Paused"))),
            image=(data.get("Config") or {}).get("Image", ""),
            labels=labels,
            urls=urls_from_labels(labels),
            created_at=_parse_docker_time(data.get("Created")),
            started_at=_parse_docker_time(state.get("StartedAt")),
        )

    async def list_containers(self) -> list[ContainerInfo]:
        stdout = await self._check(
            "ps", "-a",
            "--filter", f"label={LABEL_MANAGED}=true",
            "--format", "{{json .}}",
        )
        containers = []
        for item in self._json_lines(stdout, "container"):
            labels = _parse_label_string(item.get("Labels", ""))
            containers.append(
                ContainerInfo(
                    container_id=item.get("ID", ""),
                    name=item.get("Names", ""),
                    sandbox_id=labels.get(LABEL_SANDBOX_ID),
                    status=status_from_state(item.get("State", "")),
                    image=item.get("Image", ""),
                    labels=labels,
                    urls=urls_from_labels(labels),
                )
            )
        return containers

    async def container_stats(self, sandbox_id: str) -> SandboxStats:
        stdout = await self._check(
            "stats", "--no-stream", "--format", "{{json .}}",
            self.container_name(sandbox_id),
            sandbox_id=sandbox_id,
        )
        data = self._loads(stdout.strip().splitlines()[0] if stdout.strip() else "", "stats")
        memory_usage, memory_limit = _parse_pair(data.get("MemUsage", ""))
        network_rx, network_tx = _parse_pair(data.get("NetIO", ""))
        block_read, block_write = _parse_pair(data.get("BlockIO", ""))
        try:
            pids = int(data.get("PIDs") or 0)
        except ValueError:
            pids = 0
        return SandboxStats(
            cpu_percent=_parse_percent(data.get("CPUPerc", "")),
            memory_usage=memory_usage,
            memory_limit=memory_limit,
            memory_percent=_parse_percent(data.get("MemPerc", "")),
            network_rx=network_rx,
            network_tx=network_tx,
            block_read=block_read,
            block_write=block_write,
            pids=pids,
        )

    def _log_args(self, sandbox_id: str, options: LogOptions, follow: bool) -> list[str]:
        args = ["logs"]
        if options.tail is not None:
            args.extend(["--tail", str(options.tail)])
        if options.since is not None:
            args.extend(["--since", options.since.isoformat()])
        if options.timestamps:
            args.append("--timestamps")
        if follow:
            args.append("--follow")
        args.append(self.container_name(sandbox_id))
        return args

    async def container_logs(self, sandbox_id: str, options: LogOptions) -> str:
        # Container stdout and stderr arrive on the CLI's stdout and stderr respectively
        code, stdout, stderr = await self._run(*self._log_args(sandbox_id, options, follow=False))
        if code != 0:
            raise self._translate("logs", stderr, sandbox_id)
        return stdout + stderr

    async def follow_logs(self, sandbox_id: str, options: LogOptions) -> AsyncIterator[str]:
        """Yield log lines until the container stops or the iterator is closed."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *self._log_args(sandbox_id, options, follow=True),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise BackendUnavailableError(f"Docker CLI not available: {e}") from e

        try:
            assert proc.stdout is not None
            async for line in proc.stdout:
                yield line.decode(errors="replace").rstrip("\n")
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

    async def exec_in_container(
        self, sandbox_id: str, command: list[str], options: ExecOptions
    ) -> ExecResult:
        args = ["exec"]
        if options.working_dir:
            args.extend(["-w", options.working_dir])
        if options.user:
            args.extend(["-u", options.user])
        for key, value in options.env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(self.container_name(sandbox_id))
        args.extend(command)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendUnavailableError(f"Docker CLI not available: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=options.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BackendUnavailableError(
                f"Exec in {sandbox_id} timed out after {options.timeout}s"
            )

        stderr_text = stderr.decode(errors="replace")
        # Exit codes 125-127 come from docker itself rather than the command
        if proc.returncode in (1, 125, 126, 127):
            lowered = stderr_text.lower()
            if any(p in lowered for p in _NOT_FOUND_PATTERNS):
                raise SandboxNotFoundError(sandbox_id)
            if "is not running" in lowered or "is paused" in lowered:
                raise InvalidStateError(stderr_text.strip())

        return ExecResult(
            exit_code=proc.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr_text,
        )

    # =========================================================================
    # Images
    # =========================================================================

    async def pull_image(self, name: str, on_progress: Optional[ProgressCallback] = None) -> None:
        """Pull an image, reporting progress at start, per layer line and on completion."""
        if await self.inspect_image(name) is not None:
            if on_progress:
                on_progress(ImagePullProgress(status="Image is up to date", progress="100%", id=name))
            return

        if on_progress:
            on_progress(ImagePullProgress(status=f"Pulling {name}", progress="0%", id=name))

        proc = await asyncio.create_subprocess_exec(
            self.docker_binary, "pull", name,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        async def _read_progress() -> None:
            assert proc.stdout is not None
            async for line in proc.stdout:
                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                layer, sep, status = text.partition(": ")
                if on_progress:
                    if sep:
                        on_progress(ImagePullProgress(status=status, id=layer))
                    else:
                        on_progress(ImagePullProgress(status=text))
            await proc.wait()

        try:
            await asyncio.wait_for(_read_progress(), timeout=self.pull_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BackendUnavailableError(f"Pulling {name} timed out")

        if proc.returncode != 0:
            stderr = await proc.stderr.read() if proc.stderr else b""
            message = stderr.decode(errors="replace").strip()
            lowered = message.lower()
            if any(p in lowered for p in _DAEMON_DOWN_PATTERNS):
                raise BackendUnavailableError(message)
            raise NotProvisionableError(message or f"Failed to pull {name}")

        if on_progress:
            on_progress(ImagePullProgress(status="Download complete", progress="100%", id=name))
        logger.info(f"Pulled image {name}")

    async def inspect_image(self, name: str) -> Optional[ImageInfo]:
        code, stdout, stderr = await self._run("image", "inspect", name, "--format", "{{json .}}")
        if code != 0:
            if "no such image" in stderr.lower():
                return None
            raise self._translate("image", stderr, None)
        data = self._loads(stdout, "image inspect")
        return ImageInfo(
            id=data.get("Id", ""),
            tags=data.get("RepoTags") or [],
            size=int(data.get("Size") or 0),
            created=data.get("Created"),
        )

    async def list_images(self, reference: Optional[str] = None) -> list[ImageInfo]:
        args = ["image", "ls", "--format", "{{json .}}"]
        if reference:
            args.append(reference)
        stdout = await self._check(*args)
        images = []
        for item in self._json_lines(stdout, "image"):
            repository, tag = item.get("Repository", ""), item.get("Tag", "")
            tags = [f"{repository}:{tag}"] if repository != "<none>" else []
            images.append(
                ImageInfo(
                    id=item.get("ID", ""),
                    tags=tags,
                    size=parse_size(item.get("Size", "")),
                    created=item.get("CreatedAt"),
                )
            )
        return images

    async def remove_image(self, name: str, force: bool = False) -> None:
        args = ["image", "rm"]
        if force:
            args.append("-f")
        args.append(name)
        code, _, stderr = await self._run(*args)
        if code != 0:
            if "no such image" in stderr.lower():
                raise ImageNotFoundError(name)
            raise self._translate("image", stderr, None)

    # =========================================================================
    # Networks
    # =========================================================================

    async def ensure_network(self, name: str) -> str:
        """Idempotent: concurrent creators converge on the same network."""
        existing = await self.inspect_network(name)
        if existing is not None:
            return existing.id

        code, stdout, stderr = await self._run(
            "network", "create",
            "--driver", "bridge",
            "--label", f"{LABEL_MANAGED}=true",
            name,
        )
        if code == 0:
            logger.info(f"Created network {name}")
            return stdout.strip()

        if "already exists" in stderr.lower():
            existing = await self.inspect_network(name)
            if existing is not None:
                return existing.id
        raise self._translate("network", stderr, None)

    async def inspect_network(self, name: str) -> Optional[NetworkInfo]:
        code, stdout, stderr = await self._run("network", "inspect", name, "--format", "{{json .}}")
        if code != 0:
            if "not found" in stderr.lower() or "no such network" in stderr.lower():
                return None
            raise self._translate("network", stderr, None)
        data = self._loads(stdout, "network inspect")
        return NetworkInfo(
            id=data.get("Id", ""),
            name=data.get("Name", name),
            driver=data.get("Driver", "bridge"),
            scope=data.get("Scope", "local"),
            internal=bool(data.get("Internal")),
            containers=[
                c.get("Name", cid) for cid, c in (data.get("Containers") or {}).items()
            ],
        )

    # =========================================================================
    # Daemon
    # =========================================================================

    async def ping(self) -> bool:
        """Check that the CLI exists and the daemon answers."""
        if not shutil.which(self.docker_binary):
            logger.warning(f"{self.docker_binary} not found in PATH")
            return False
        try:
            code, _, _ = await self._run("info", "--format", "{{json .ID}}", timeout=5.0)
        except BackendUnavailableError:
            return False
        return code == 0

    async def info(self) -> DockerInfo:
        info = self._loads(await self._check("info", "--format", "{{json .}}"), "info")
        version = self._loads(await self._check("version", "--format", "{{json .}}"), "version")
        server = version.get("Server") or {}
        return DockerInfo(
            version=info.get("ServerVersion") or server.get("Version", ""),
            api_version=server.get("ApiVersion", ""),
            os=info.get("OperatingSystem") or info.get("OSType", ""),
            arch=info.get("Architecture", ""),
            cpus=int(info.get("NCPU") or 0),
            total_memory=int(info.get("MemTotal") or 0),
            containers_running=int(info.get("ContainersRunning") or 0),
            containers_stopped=int(info.get("ContainersStopped") or 0),
            images=int(info.get("Images") or 0),
        )
