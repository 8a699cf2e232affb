"""nkdocker - asyncio client for the container engine API.

The connection layer (Dispatcher, ConnectionPool, SubscriptionRegistry)
runs engine commands over pooled HTTP/1.1 connections and turns streaming
responses into subscriptions. DockerClient adds one method per engine
operation on top.
"""

from .client import ContainerAPI, DockerClient, ExecAPI, ImageAPI
from .config import EngineConfig
from .dispatcher import Dispatcher, StreamHandle
from .errors import (
    CommandTimeout,
    DockerError,
    EngineConnectionError,
    ErrorKind,
    OptionsError,
    ReferenceNotFound,
    RemoteError,
    StreamProtocolError,
    classify,
)
from .pool import ConnectionPool
from .protocol import (
    Channel,
    CommandOptions,
    DemuxMode,
    Message,
    MessageKind,
    RegistryAuth,
    TerminalReason,
    make_path,
)
from .subscriptions import Subscription, SubscriptionRegistry

__version__ = "0.1.0"

__all__ = [
    "ContainerAPI",
    "DockerClient",
    "ExecAPI",
    "ImageAPI",
    "EngineConfig",
    "Dispatcher",
    "StreamHandle",
    "CommandTimeout",
    "DockerError",
    "EngineConnectionError",
    "ErrorKind",
    "OptionsError",
    "ReferenceNotFound",
    "RemoteError",
    "StreamProtocolError",
    "classify",
    "ConnectionPool",
    "Channel",
    "CommandOptions",
    "DemuxMode",
    "Message",
    "MessageKind",
    "RegistryAuth",
    "TerminalReason",
    "make_path",
    "Subscription",
    "SubscriptionRegistry",
]
