"""Engine connection configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import httpx

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2376
DEFAULT_SOCKET = "/var/run/docker.sock"
DEFAULT_IDLE_TIMEOUT = 5000  # ms

PROTOCOLS = ("tcp", "tls", "unix")


@dataclass
class EngineConfig:
    """How to reach the engine and how to manage connections to it."""

    # Endpoint
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    proto: str = "tcp"  # "tcp" | "tls" | "unix"
    socket_path: str = DEFAULT_SOCKET

    # TLS
    certfile: str | None = None
    keyfile: str | None = None
    cafile: str | None = None
    verify: bool = True

    # Connection management
    idle_timeout: int = DEFAULT_IDLE_TIMEOUT
    connect_timeout: float = 10.0  # seconds
    mailbox_size: int = 64

    def __post_init__(self) -> None:
        if self.proto not in PROTOCOLS:
            raise ValueError(f"Unsupported protocol: {self.proto}")
        if self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        if self.mailbox_size <= 0:
            raise ValueError("mailbox_size must be positive")

    @property
    def endpoint_key(self) -> tuple[str, str, int | str]:
        """Key identifying the endpoint, used to group pooled connections."""
        if self.proto == "unix":
            return ("unix", "localhost", self.socket_path)
        return (self.proto, self.host, self.port)

    @property
    def host_header(self) -> str:
        if self.proto == "unix":
            return "localhost"
        return f"{self.host}:{self.port}"

    @classmethod
    def from_url(cls, url: str, **kwargs: object) -> EngineConfig:
        """Build a config from a DOCKER_HOST style URL."""
        return cls(**parse_host(url), **kwargs)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from environment variables.

        NKDOCKER_* variables take precedence over their DOCKER_* equivalents.
        """
        settings: dict[str, object] = {}

        host = _env("HOST")
        if host:
            settings.update(parse_host(host))

        cert_path = _env("CERT_PATH")
        if cert_path:
            base = Path(cert_path)
            settings["certfile"] = str(base / "cert.pem")
            settings["keyfile"] = str(base / "key.pem")
            ca = base / "ca.pem"
            if ca.exists():
                settings["cafile"] = str(ca)
            if settings.get("proto", "tcp") == "tcp":
                settings["proto"] = "tls"

        verify = _env("TLS_VERIFY")
        if verify is not None:
            settings["verify"] = verify.lower() in ("1", "true", "yes")

        idle = os.environ.get("NKDOCKER_IDLE_TIMEOUT")
        if idle:
            settings["idle_timeout"] = int(idle)

        return cls(**settings)  # type: ignore[arg-type]


def _env(name: str) -> str | None:
    value = os.environ.get(f"NKDOCKER_{name}")
    if value is None:
        value = os.environ.get(f"DOCKER_{name}")
    return value


def parse_host(url: str) -> dict[str, object]:
    """Parse a host URL into EngineConfig fields.

    Accepts unix:///path/to.sock, tcp://host:port, http://host:port and
    https://host:port. A tcp URL on port 2376 is not upgraded to TLS
    implicitly; use https:// or a cert path for that.
    """
    parsed = httpx.URL(url)
    scheme = parsed.scheme
    if scheme == "unix":
        path = parsed.path or DEFAULT_SOCKET
        return {"proto": "unix", "socket_path": path}
    if scheme in ("tcp", "http"):
        proto = "tcp"
    elif scheme == "https":
        proto = "tls"
    else:
        raise ValueError(f"Unsupported engine URL: {url}")
    return {
        "proto": proto,
        "host": parsed.host or DEFAULT_HOST,
        "port": parsed.port or DEFAULT_PORT,
    }
