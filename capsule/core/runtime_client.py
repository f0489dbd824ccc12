"""
Agent runtime client.

Each sandbox runs a coding-agent runtime exposing sessions, messages and
files over HTTP, plus a server-sent event feed. AgentRuntimeClient is the
contract the sync engine depends on; HttpRuntimeClient implements it with
httpx. RuntimeClientFactory hands out one client per running sandbox.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

import httpx
import pydantic

from capsule.core.streams import Stream
from capsule.db.database import Database
from capsule.lib.errors import (
    MessageNotFoundError,
    RuntimeUnavailableError,
    SandboxNotFoundError,
    SandboxNotRunningError,
    SessionNotFoundError,
)
from capsule.models.runtime import (
    FileContent,
    FileNode,
    PermissionResponse,
    Provider,
    RuntimeEvent,
    RuntimeMessage,
    RuntimeSession,
    SendMessageInput,
)
from capsule.models.sandbox import Sandbox, SandboxStatus

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


class AgentRuntimeClient(ABC):
    """Operations against one sandbox's agent runtime."""

    @abstractmethod
    async def list_sessions(self) -> list[RuntimeSession]: ...

    @abstractmethod
    async def create_session(self, title: Optional[str] = None) -> RuntimeSession: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> RuntimeSession:
        """Raises SessionNotFoundError when the runtime has no such session."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def abort_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def list_messages(self, session_id: str) -> list[RuntimeMessage]:
        """Messages in runtime order. Raises SessionNotFoundError."""

    @abstractmethod
    async def send_message(self, session_id: str, message: SendMessageInput) -> RuntimeMessage: ...

    @abstractmethod
    async def get_message(self, session_id: str, message_id: str) -> RuntimeMessage: ...

    @abstractmethod
    async def read_file(self, path: str) -> FileContent: ...

    @abstractmethod
    async def list_files(self, path: str = ".") -> list[FileNode]: ...

    @abstractmethod
    async def find_files(self, query: str) -> list[str]: ...

    @abstractmethod
    async def list_providers(self) -> list[Provider]:
        """Configured model providers, excluding ones sourced from the environment."""

    @abstractmethod
    async def respond_to_permission(
        self, session_id: str, permission_id: str, response: PermissionResponse
    ) -> bool: ...

    @abstractmethod
    def subscribe_events(self, stop: Optional[asyncio.Event] = None) -> Stream[RuntimeEvent]:
        """Lazy event feed; ends when `stop` is set or the stream is closed."""

    async def health_check(self) -> bool:
        try:
            await self.list_sessions()
            return True
        except RuntimeUnavailableError:
            return False

    async def aclose(self) -> None:
        """Release connections."""


class HttpRuntimeClient(AgentRuntimeClient):
    """AgentRuntimeClient over the runtime's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        not_found: Optional[Exception] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RuntimeUnavailableError(
                f"Agent runtime unreachable at {self.base_url}: {e.__class__.__name__}"
            ) from e

        if response.status_code == 404 and not_found is not None:
            raise not_found
        if response.status_code >= 400:
            raise RuntimeUnavailableError(
                f"Agent runtime returned {response.status_code} for {method} {path}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RuntimeUnavailableError(f"Malformed JSON from agent runtime for {path}") from e

    def _parse(self, model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            raise RuntimeUnavailableError(
                f"Malformed {model.__name__} from agent runtime at {self.base_url}"
            ) from e

    def _expect_list(self, data: Any, path: str) -> list[Any]:
        if not isinstance(data, list):
            raise RuntimeUnavailableError(f"Expected a list from agent runtime for {path}")
        return data

    # Sessions

    async def list_sessions(self) -> list[RuntimeSession]:
        data = self._expect_list(await self._request("GET", "/session"), "/session")
        return [self._parse(RuntimeSession, item) for item in data]

    async def create_session(self, title: Optional[str] = None) -> RuntimeSession:
        body = {"title": title} if title else {}
        return self._parse(RuntimeSession, await self._request("POST", "/session", json=body))

    async def get_session(self, session_id: str) -> RuntimeSession:
        data = await self._request(
            "GET", f"/session/{session_id}", not_found=SessionNotFoundError(session_id)
        )
        return self._parse(RuntimeSession, data)

    async def delete_session(self, session_id: str) -> bool:
        data = await self._request(
            "DELETE", f"/session/{session_id}", not_found=SessionNotFoundError(session_id)
        )
        return bool(data) if data is not None else True

    async def abort_session(self, session_id: str) -> bool:
        data = await self._request(
            "POST", f"/session/{session_id}/abort", not_found=SessionNotFoundError(session_id)
        )
        return bool(data) if data is not None else True

    # Messages

    async def list_messages(self, session_id: str) -> list[RuntimeMessage]:
        path = f"/session/{session_id}/message"
        data = self._expect_list(
            await self._request("GET", path, not_found=SessionNotFoundError(session_id)),
            path,
        )
        return [self._parse(RuntimeMessage, item) for item in data]

    async def send_message(self, session_id: str, message: SendMessageInput) -> RuntimeMessage:
        data = await self._request(
            "POST",
            f"/session/{session_id}/message",
            json=message.model_dump(by_alias=True, exclude_none=True),
            not_found=SessionNotFoundError(session_id),
            # Prompts block until the agent finishes its turn
            timeout=httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0),
        )
        return self._parse(RuntimeMessage, data)

    async def get_message(self, session_id: str, message_id: str) -> RuntimeMessage:
        data = await self._request(
            "GET",
            f"/session/{session_id}/message/{message_id}",
            not_found=MessageNotFoundError(message_id),
        )
        return self._parse(RuntimeMessage, data)

    # Files

    async def read_file(self, path: str) -> FileContent:
        data = await self._request("GET", "/file/content", params={"path": path})
        return self._parse(FileContent, data)

    async def list_files(self, path: str = ".") -> list[FileNode]:
        data = self._expect_list(await self._request("GET", "/file", params={"path": path}), "/file")
        return [self._parse(FileNode, item) for item in data]

    async def find_files(self, query: str) -> list[str]:
        data = self._expect_list(
            await self._request("GET", "/find/file", params={"query": query}), "/find/file"
        )
        return [str(item) for item in data]

    # Config

    async def list_providers(self) -> list[Provider]:
        data = await self._request("GET", "/config/providers") or {}
        providers = data.get("providers", []) if isinstance(data, dict) else data
        return [
            self._parse(Provider, item)
            for item in providers
            if isinstance(item, dict) and item.get("source") != "env"
        ]

    async def respond_to_permission(
        self, session_id: str, permission_id: str, response: PermissionResponse
    ) -> bool:
        data = await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json={"response": response},
            not_found=SessionNotFoundError(session_id),
        )
        return bool(data) if data is not None else True

    # Events

    def subscribe_events(self, stop: Optional[asyncio.Event] = None) -> Stream[RuntimeEvent]:
        return Stream(self._event_source(stop), name=f"events-{self.base_url}")

    async def _event_source(self, stop: Optional[asyncio.Event]) -> AsyncIterator[RuntimeEvent]:
        """Parse the SSE feed; a blank line terminates each event's data block."""
        timeout = httpx.Timeout(connect=10.0, read=None, write=10.0, pool=10.0)
        try:
            async with self._client.stream("GET", "/event", timeout=timeout) as response:
                if response.status_code >= 400:
                    raise RuntimeUnavailableError(
                        f"Agent runtime event feed returned {response.status_code}"
                    )
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if stop is not None and stop.is_set():
                        return
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                        continue
                    if line or not data_lines:
                        continue
                    payload = "\n".join(data_lines)
                    data_lines = []
                    try:
                        event = RuntimeEvent.model_validate(json.loads(payload))
                    except (json.JSONDecodeError, ValueError):
                        logger.debug(f"Skipping malformed runtime event: {payload[:100]}")
                        continue
                    yield event
        except httpx.HTTPError as e:
            raise RuntimeUnavailableError(
                f"Agent runtime event feed failed at {self.base_url}: {e.__class__.__name__}"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()


class RuntimeClientFactory:
    """Builds and caches one runtime client per sandbox.

    Clients are only handed out for sandboxes the registry reports as running.
    """

    def __init__(
        self,
        database: Database,
        builder: Callable[[Sandbox], AgentRuntimeClient],
    ):
        self.database = database
        self._builder = builder
        self._clients: dict[str, AgentRuntimeClient] = {}

    async def get_client(self, sandbox_id: str) -> AgentRuntimeClient:
        sandbox = await self.database.get_sandbox(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        if sandbox.status != SandboxStatus.RUNNING:
            raise SandboxNotRunningError(sandbox_id, sandbox.status.value)

        client = self._clients.get(sandbox_id)
        if client is None:
            client = self._builder(sandbox)
            self._clients[sandbox_id] = client
        return client

    async def discard(self, sandbox_id: str) -> None:
        """Drop a cached client, e.g. after the sandbox stops or is deleted."""
        client = self._clients.pop(sandbox_id, None)
        if client is not None:
            await client.aclose()

    async def aclose(self) -> None:
        for sandbox_id in list(self._clients):
            await self.discard(sandbox_id)
