"""Engine API client.

DockerClient wraps a Dispatcher with one method per engine operation.
Each method builds the request path, picks the connection policy for the
operation and dispatches it.

Usage:
    async with DockerClient.from_env() as client:
        containers = await client.containers.list(all=True)

        handle = await client.events(filters={"event": ["start", "die"]})
        async for message in handle:
            if message.final:
                break
            print(message.payload)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .config import EngineConfig
from .dispatcher import Dispatcher, StreamHandle
from .protocol.commands import (
    ATTACH_TIMEOUT,
    DEFAULT_TIMEOUT,
    EXEC_TIMEOUT,
    WAIT_TIMEOUT,
    Verb,
    grace_timeout,
)
from .protocol.messages import Channel
from .protocol.paths import HUB, RegistryAuth, make_path, resource_path
from .transport import Transport

# Requests the engine answers by hijacking the connection
HIJACK_HEADERS = {"Connection": "Upgrade", "Upgrade": "tcp"}
TAR_HEADERS = {"Content-Type": "application/tar"}

STREAM_IDLE_TIMEOUT = 5000


def _auth_headers(auth: RegistryAuth | None, headers: Mapping[str, str] | None = None) -> dict[str, str]:
    merged = dict(headers or {})
    if auth is not None:
        merged.update(auth.header())
    return merged


def _registry_options(async_: bool, timeout: int | None, auth: RegistryAuth | None, **extra: Any) -> dict[str, Any]:
    """Options shared by build, pull and push."""
    options: dict[str, Any] = {
        "async": async_,
        "force_new": True,
        "timeout": timeout or DEFAULT_TIMEOUT,
        "headers": _auth_headers(auth, extra.pop("headers", None)),
    }
    options.update(extra)
    return options


@dataclass
class ContainerAPI:
    """Container operations."""

    _client: DockerClient

    async def list(
        self,
        all: bool | None = None,
        before: str | None = None,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        size: bool | None = None,
        since: str | None = None,
    ) -> list[dict[str, Any]]:
        """List containers.

        Example:
            await client.containers.list(filters={"status": "running"})
        """
        query = {"all": all, "before": before, "filters": filters, "limit": limit, "size": size, "since": since}
        path = make_path("/containers/json", query, query)
        return await self._client.request(Verb.GET, path)

    async def create(
        self,
        image: str,
        spec: Mapping[str, Any] | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        """Create a container.

        Args:
            image: Image to create the container from
            spec: Engine container configuration (Cmd, Env, HostConfig, ...)
            name: Container name

        Returns:
            The engine response, with the new container's Id
        """
        body = dict(spec or {})
        body["Image"] = image
        path = make_path("/containers/create", {"name": name}, ["name"])
        return await self._client.request(Verb.POST, path, body, force_new=True)

    async def inspect(self, container: str) -> dict[str, Any]:
        return await self._client.request(Verb.GET, resource_path("containers", container, "json"))

    async def top(self, container: str, ps_args: str | None = None) -> dict[str, Any]:
        path = make_path(resource_path("containers", container, "top"), {"ps_args": ps_args}, ["ps_args"])
        return await self._client.request(Verb.GET, path)

    async def logs(
        self,
        container: str,
        follow: bool | None = None,
        stdout: bool | None = True,
        stderr: bool | None = None,
        timestamps: bool | None = None,
        tail: str | int | None = None,
        async_: bool = False,
        tty: bool | None = None,
    ) -> bytes | list[tuple[Channel, bytes]] | StreamHandle:
        """Container logs.

        With follow the logs are streamed until the container stops or no
        output arrives for a while; with async_ they are delivered as a
        stream without following. Otherwise the current logs are returned:
        (Channel, bytes) frames for multiplexed output, bytes for a tty.
        """
        query = {"follow": follow, "timestamps": timestamps, "stdout": stdout, "stderr": stderr, "tail": tail}
        path = make_path(resource_path("containers", container, "logs"), query, query)
        if follow:
            options = {"async": True, "idle_timeout": STREAM_IDLE_TIMEOUT, "refresh": True, "tty": tty}
        elif async_:
            options = {"async": True, "tty": tty}
        else:
            options = {"force_new": True}
        return await self._client.request(Verb.GET, path, **options)

    async def diff(self, container: str) -> list[dict[str, Any]]:
        return await self._client.request(Verb.GET, resource_path("containers", container, "changes"))

    async def export(self, container: str, file: str | Path) -> None:
        """Write the container filesystem as a tar archive to file."""
        path = resource_path("containers", container, "export")
        await self._client.request(Verb.GET, path, redirect=Path(file), timeout=DEFAULT_TIMEOUT)

    async def stats(self, container: str) -> StreamHandle:
        """Stream resource usage documents while the engine keeps sending them."""
        path = resource_path("containers", container, "stats")
        return await self._client.request(
            Verb.GET, path, **{"async": True, "idle_timeout": STREAM_IDLE_TIMEOUT, "refresh": True}
        )

    async def resize(self, container: str, w: int, h: int) -> None:
        path = make_path(resource_path("containers", container, "resize"), {"h": h, "w": w}, ["h", "w"])
        await self._client.request(Verb.POST, path)

    async def start(self, container: str) -> None:
        await self._client.request(Verb.POST, resource_path("containers", container, "start"), force_new=True)

    async def stop(self, container: str, t: int | None = None) -> None:
        """Stop a container, killing it after t seconds."""
        path = make_path(resource_path("containers", container, "stop"), {"t": t}, ["t"])
        await self._client.request(Verb.POST, path, force_new=True, timeout=grace_timeout(t))

    async def restart(self, container: str, t: int | None = None) -> None:
        path = make_path(resource_path("containers", container, "restart"), {"t": t}, ["t"])
        await self._client.request(Verb.POST, path, force_new=True, timeout=grace_timeout(t))

    async def kill(self, container: str, signal: str | int | None = None) -> None:
        path = make_path(resource_path("containers", container, "kill"), {"signal": signal}, ["signal"])
        await self._client.request(Verb.POST, path, force_new=True)

    async def rename(self, container: str, name: str) -> None:
        path = make_path(resource_path("containers", container, "rename"), {"name": name}, ["name"])
        await self._client.request(Verb.POST, path)

    async def pause(self, container: str) -> None:
        await self._client.request(Verb.POST, resource_path("containers", container, "pause"))

    async def unpause(self, container: str) -> None:
        await self._client.request(Verb.POST, resource_path("containers", container, "unpause"))

    async def attach(
        self,
        container: str,
        stream: bool | None = True,
        logs: bool | None = None,
        stdin: bool | None = True,
        stdout: bool | None = True,
        stderr: bool | None = None,
        async_: bool = False,
        timeout: int | None = None,
        tty: bool | None = None,
    ) -> bytes | StreamHandle:
        """Attach to a container.

        With stream the connection is hijacked and kept open for up to
        `timeout` ms (one hour by default); write to the container's stdin
        with attach_send. Set tty to match the container so the output is
        demultiplexed correctly.
        """
        query = {"logs": logs, "stream": stream, "stdin": stdin, "stdout": stdout, "stderr": stderr}
        path = make_path(resource_path("containers", container, "attach"), query, query)
        if stream:
            options = {
                "async": True,
                "timeout": timeout or ATTACH_TIMEOUT,
                "tty": tty,
                "headers": HIJACK_HEADERS,
            }
        elif async_:
            options = {"async": True, "tty": tty}
        else:
            options = {"force_new": True}
        return await self._client.request(Verb.POST, path, **options)

    async def attach_send(self, reference: str, data: bytes) -> None:
        await self._client.dispatcher.send(reference, data)

    async def wait(self, container: str, timeout: int = WAIT_TIMEOUT) -> int:
        """Block until the container stops, returning its exit code."""
        path = resource_path("containers", container, "wait")
        result = await self._client.request(Verb.POST, path, force_new=True, timeout=timeout)
        return result["StatusCode"]

    async def remove(self, container: str, force: bool | None = None, v: bool | None = None) -> None:
        path = make_path(resource_path("containers", container), {"force": force, "v": v}, ["force", "v"])
        await self._client.request(Verb.DELETE, path, force_new=True)

    async def copy(self, container: str, path: str, file: str | Path) -> None:
        """Write a tar archive of a path inside the container to file."""
        await self._client.request(
            Verb.POST,
            resource_path("containers", container, "copy"),
            {"Resource": path},
            redirect=Path(file),
        )


@dataclass
class ImageAPI:
    """Image operations."""

    _client: DockerClient

    async def list(self, all: bool | None = None, filters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        path = make_path("/images/json", {"all": all, "filters": filters}, ["all", "filters"])
        return await self._client.request(Verb.GET, path)

    async def build(
        self,
        tar: bytes,
        dockerfile: str | None = None,
        t: str | None = None,
        remote: str | None = None,
        q: bool | None = None,
        nocache: bool | None = None,
        pull: bool | None = None,
        rm: bool | None = None,
        forcerm: bool | None = None,
        async_: bool = False,
        timeout: int | None = None,
        auth: RegistryAuth | None = None,
    ) -> list[dict[str, Any]] | StreamHandle:
        """Build an image from a tar build context.

        Returns the build progress documents, or a stream of them with async_.
        """
        query = {
            "dockerfile": dockerfile,
            "t": t,
            "remote": remote,
            "q": q,
            "nocache": nocache,
            "pull": pull,
            "rm": rm,
            "forcerm": forcerm,
        }
        path = make_path("/build", query, query)
        options = _registry_options(async_, timeout, auth, headers=TAR_HEADERS)
        return await self._client.request(Verb.POST, path, tar, **options)

    async def create(
        self,
        from_image: str | None = None,
        from_src: str | None = None,
        repo: str | None = None,
        tag: str | None = None,
        registry: str | None = None,
        async_: bool = False,
        timeout: int | None = None,
        auth: RegistryAuth | None = None,
    ) -> list[dict[str, Any]] | StreamHandle:
        """Pull (from_image) or import (from_src) an image."""
        query = {"fromImage": from_image, "fromSrc": from_src, "repo": repo, "tag": tag, "registry": registry}
        path = make_path("/images/create", query, query)
        options = _registry_options(async_, timeout, auth)
        return await self._client.request(Verb.POST, path, **options)

    async def inspect(self, name: str) -> dict[str, Any]:
        return await self._client.request(Verb.GET, resource_path("images", name, "json"))

    async def history(self, name: str) -> list[dict[str, Any]]:
        return await self._client.request(Verb.GET, resource_path("images", name, "history"))

    async def push(
        self,
        name: str,
        tag: str | None = None,
        async_: bool = False,
        timeout: int | None = None,
        auth: RegistryAuth | None = None,
    ) -> list[dict[str, Any]] | StreamHandle:
        path = make_path(resource_path("images", name, "push"), {"tag": tag}, ["tag"])
        options = _registry_options(async_, timeout, auth)
        return await self._client.request(Verb.POST, path, **options)

    async def tag(
        self,
        name: str,
        repo: str | None = None,
        tag: str | None = None,
        force: bool | None = None,
    ) -> None:
        query = {"repo": repo, "force": force, "tag": tag}
        path = make_path(resource_path("images", name, "tag"), query, query)
        await self._client.request(Verb.POST, path)

    async def commit(
        self,
        container: str,
        spec: Mapping[str, Any] | None = None,
        repo: str | None = None,
        tag: str | None = None,
        author: str | None = None,
        comment: str | None = None,
        timeout: int | None = None,
    ) -> dict[str, Any]:
        """Create an image from a container.

        Args:
            container: Container to commit
            spec: Engine container configuration for the new image
        """
        query = {"container": container, "repo": repo, "tag": tag, "author": author, "comment": comment}
        path = make_path("/commit", query, query)
        return await self._client.request(
            Verb.POST, path, dict(spec or {}), force_new=True, timeout=timeout or DEFAULT_TIMEOUT
        )

    async def remove(
        self,
        name: str,
        force: bool | None = None,
        noprune: bool | None = None,
    ) -> list[dict[str, Any]]:
        path = make_path(resource_path("images", name), {"force": force, "noprune": noprune}, ["force", "noprune"])
        return await self._client.request(Verb.DELETE, path)

    async def search(self, term: str) -> list[dict[str, Any]]:
        path = make_path("/images/search", {"term": term}, ["term"])
        return await self._client.request(Verb.GET, path, force_new=True, timeout=DEFAULT_TIMEOUT)

    async def get(self, name: str, file: str | Path) -> None:
        """Write a tarball of an image and its history to file."""
        path = resource_path("images", name, "get")
        await self._client.request(Verb.GET, path, redirect=Path(file), timeout=DEFAULT_TIMEOUT)

    async def get_many(self, names: Sequence[str], file: str | Path) -> None:
        path = f"/images/get?{httpx.QueryParams([('names', name) for name in names])}"
        await self._client.request(Verb.GET, path, redirect=Path(file), timeout=DEFAULT_TIMEOUT)

    async def load(self, tar: bytes) -> None:
        await self._client.request(
            Verb.POST, "/images/load", tar, force_new=True, headers=TAR_HEADERS, timeout=DEFAULT_TIMEOUT
        )


@dataclass
class ExecAPI:
    """Exec session operations."""

    _client: DockerClient

    async def create(
        self,
        container: str,
        cmd: Sequence[str],
        stdin: bool = True,
        stdout: bool = True,
        stderr: bool = True,
        tty: bool = True,
    ) -> str:
        """Create an exec session, returning its id."""
        spec = {
            "AttachStdin": stdin,
            "AttachStdout": stdout,
            "AttachStderr": stderr,
            "Tty": tty,
            "Cmd": list(cmd),
        }
        path = resource_path("containers", container, "exec")
        result = await self._client.request(Verb.POST, path, spec, force_new=True)
        return result["Id"]

    async def start(
        self,
        exec_id: str,
        detach: bool = False,
        tty: bool = True,
        timeout: int | None = None,
    ) -> bytes | StreamHandle:
        """Start an exec session.

        Detached sessions return once started. Otherwise the session output
        is streamed, and stdin can be written with the handle's send.
        """
        path = resource_path("exec", exec_id, "start")
        spec = {"Detach": detach, "Tty": tty}
        if detach:
            return await self._client.request(Verb.POST, path, spec, force_new=True)
        options = {
            "async": True,
            "timeout": timeout or EXEC_TIMEOUT,
            "tty": tty,
            "headers": HIJACK_HEADERS,
        }
        return await self._client.request(Verb.POST, path, spec, **options)

    async def inspect(self, exec_id: str) -> dict[str, Any]:
        return await self._client.request(Verb.GET, resource_path("exec", exec_id, "json"))

    async def resize(self, exec_id: str, w: int, h: int) -> None:
        path = make_path(resource_path("exec", exec_id, "resize"), {"h": h, "w": w}, ["h", "w"])
        await self._client.request(Verb.POST, path)


class DockerClient:
    """Client for one engine.

    Operations are grouped by resource:
    - client.containers: ContainerAPI
    - client.images: ImageAPI
    - client.exec: ExecAPI

    System operations (version, info, ping, events, login) live on the
    client itself.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        transport: Transport | None = None,
        dispatcher: Dispatcher | None = None,
    ):
        self._dispatcher = dispatcher or Dispatcher(config, transport)
        self._owns_dispatcher = dispatcher is None

    @classmethod
    def from_env(cls) -> DockerClient:
        return cls(EngineConfig.from_env())

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def containers(self) -> ContainerAPI:
        return ContainerAPI(_client=self)

    @property
    def images(self) -> ImageAPI:
        return ImageAPI(_client=self)

    @property
    def exec(self) -> ExecAPI:
        return ExecAPI(_client=self)

    async def request(self, verb: Verb, path: str, body: Any = None, **options: Any) -> Any:
        """Dispatch a command; keyword arguments are CommandOptions fields."""
        options = {name: value for name, value in options.items() if value is not None}
        return await self._dispatcher.dispatch(verb, path, body, options)

    async def finish(self, reference: str) -> None:
        await self._dispatcher.finish(reference)

    async def close(self) -> None:
        if self._owns_dispatcher:
            await self._dispatcher.close()

    async def __aenter__(self) -> DockerClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # System

    async def version(self) -> dict[str, Any]:
        return await self.request(Verb.GET, "/version")

    async def info(self) -> dict[str, Any]:
        return await self.request(Verb.GET, "/info")

    async def ping(self) -> bool:
        """True if the engine answers OK."""
        result = await self.request(Verb.GET, "/_ping")
        return result == b"OK"

    async def events(
        self,
        filters: Mapping[str, Any] | None = None,
        since: str | int | None = None,
        until: str | int | None = None,
    ) -> StreamHandle:
        """Subscribe to engine events.

        The subscription ends when no event arrives for a few seconds.

        Example:
            await client.events(filters={"event": ["start", "die"], "container": "web"})
        """
        query = {"filters": filters, "since": since, "until": until}
        path = make_path("/events", query, query)
        return await self.request(
            Verb.GET,
            path,
            **{"async": True, "force_new": True, "idle_timeout": STREAM_IDLE_TIMEOUT, "refresh": True},
        )

    async def login(self, username: str, password: str, email: str = "", server: str = HUB) -> None:
        auth = RegistryAuth(username=username, password=password, email=email, serveraddress=server)
        await self.request(Verb.POST, "/auth", auth.model_dump(), force_new=True)
