# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Broadcast Transport Layer for SnapLeader.

This module provides the broadcast medium shared by all nodes on one
channel. Every backend offers the same contract:
- broadcast() delivers to all *other* live nodes on the channel
- delivery is best-effort, unordered and may duplicate
- a node never receives its own broadcasts

Backends:
- LocalChannelTransport: native pub/sub between nodes of one process
- MulticastTransport: native pub/sub between processes over UDP multicast
- StorageTransport: fallback through a shared storage key
- NullTransport: no medium at all, the node leads alone
"""

from __future__ import annotations

import asyncio
import json
import socket
import struct
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from snapleader.coordination.config import CoordinatorConfig
from snapleader.coordination.messages import Message, decode_message
from snapleader.coordination.storage import FileStorage, SharedStorage
from snapleader.exceptions import StorageError, TransportUnavailableError
from snapleader.utils.logger import logger

MessageHandler = Callable[[Message], None]


class Transport(ABC):
    """Uniform broadcast/receive interface over one channel."""

    name = "transport"

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self._handler: Optional[MessageHandler] = None
        self._running = False

    def set_handler(self, handler: Optional[MessageHandler]) -> None:
        """Set (or with None, detach) the incoming message handler.

        Args:
            handler: Function called with each message from another node
        """
        self._handler = handler

    @property
    def is_running(self) -> bool:
        """Check whether the transport is started."""
        return self._running

    @abstractmethod
    async def start(self) -> None:
        """Start the transport.

        Raises:
            TransportUnavailableError: If the backend cannot be used here
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport."""

    @abstractmethod
    def broadcast(self, message: Message) -> None:
        """Send a message to every other node on the channel (fire and forget)."""

    def _dispatch(self, message: Message) -> None:
        """Hand a received message to the handler."""
        if not self._running or self._handler is None:
            return
        logger.debug(f"[{self.name}] received {message.message_type.value} from {message.sender_id}")
        try:
            self._handler(message)
        except Exception as e:
            logger.error(f"[{self.name}] handler error: {e}")


class NullTransport(Transport):
    """A transport with no medium; broadcasts go nowhere."""

    name = "none"

    async def start(self) -> None:
        self._running = True
        logger.warning("No broadcast medium available, running as a single node")

    async def stop(self) -> None:
        self._running = False

    def broadcast(self, message: Message) -> None:
        pass


class ChannelHub:
    """In-process pub/sub hub shared by LocalChannelTransport instances.

    One hub stands for one process; tests create a hub per simulated
    network instead of relying on a process-wide registry.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List["LocalChannelTransport"]] = {}
        # Subscribers that currently drop everything (simulated partition)
        self.partitioned: set = set()

    def join(self, transport: "LocalChannelTransport") -> None:
        members = self._subscribers.setdefault(transport.channel, [])
        if transport not in members:
            members.append(transport)

    def leave(self, transport: "LocalChannelTransport") -> None:
        members = self._subscribers.get(transport.channel, [])
        if transport in members:
            members.remove(transport)

    def members(self, channel: str) -> List["LocalChannelTransport"]:
        return list(self._subscribers.get(channel, []))

    def publish(self, sender: "LocalChannelTransport", message: Message) -> None:
        """Deliver message to every other subscriber on the sender's channel."""
        if sender in self.partitioned:
            return
        for receiver in self.members(sender.channel):
            if receiver is sender or receiver in self.partitioned:
                continue
            receiver._enqueue(message)


class LocalChannelTransport(Transport):
    """Native pub/sub between nodes living in one process.

    Delivery is scheduled with call_soon, so a handler never runs inside
    the sender's broadcast() call.

    Example:
        >>> hub = ChannelHub()
        >>> a = LocalChannelTransport(hub, "session-1")
        >>> b = LocalChannelTransport(hub, "session-1")
        >>> b.set_handler(print)
        >>> await a.start(); await b.start()
        >>> a.broadcast(Heartbeat(sender_id="node-a"))
    """

    name = "local"

    def __init__(self, hub: ChannelHub, channel: str) -> None:
        super().__init__(channel)
        self.hub = hub

    async def start(self) -> None:
        if self._running:
            return
        self.hub.join(self)
        self._running = True

    async def stop(self) -> None:
        self._running = False
        self.hub.leave(self)

    def broadcast(self, message: Message) -> None:
        if not self._running:
            return
        self.hub.publish(self, message)

    def _enqueue(self, message: Message) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dispatch(message)
            return
        loop.call_soon(self._dispatch, message)


class MulticastTransport(Transport):
    """Native pub/sub between processes over UDP multicast.

    Every datagram carries the sending transport's origin id and channel;
    datagrams from this transport (multicast loopback) or from another
    channel are dropped.
    """

    name = "multicast"

    def __init__(
        self,
        channel: str,
        group: str = "239.255.42.99",
        port: int = 47946,
        ttl: int = 1,
    ) -> None:
        """Initialize the multicast transport.

        Args:
            channel: Channel name shared by all nodes of the session
            group: Multicast group address
            port: UDP port bound by every node
            ttl: Multicast TTL (1 keeps traffic on the local network)
        """
        super().__init__(channel)
        self.group = group
        self.port = port
        self.ttl = ttl
        self.origin = uuid.uuid4().hex
        self._udp_transport: Optional[asyncio.DatagramTransport] = None

    async def start(self) -> None:
        if self._running:
            return
        try:
            sock = self._open_socket()
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(
                lambda: MulticastProtocol(self),
                sock=sock,
            )
        except OSError as e:
            raise TransportUnavailableError(
                f"Cannot join multicast group {self.group}:{self.port}: {e}",
                transport=self.name,
            ) from e
        self._udp_transport = transport
        self._running = True
        logger.info(f"Multicast transport joined {self.group}:{self.port} (channel={self.channel})")

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self.port))

            mreq = struct.pack(
                "4sl",
                socket.inet_aton(self.group),
                socket.INADDR_ANY,
            )
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
            # Loopback stays on so nodes on the same host hear each other
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._udp_transport:
            self._udp_transport.close()
            self._udp_transport = None
        logger.info("Multicast transport stopped")

    def broadcast(self, message: Message) -> None:
        if not self._running or not self._udp_transport:
            return
        envelope = {
            "origin": self.origin,
            "channel": self.channel,
            "message": message.to_dict(),
        }
        try:
            self._udp_transport.sendto(
                json.dumps(envelope).encode("utf-8"),
                (self.group, self.port),
            )
        except OSError as e:
            logger.debug(f"Multicast send failed: {e}")

    def _datagram_received(self, data: bytes) -> None:
        try:
            envelope = json.loads(data.decode("utf-8"))
        except ValueError:
            return
        if not isinstance(envelope, dict):
            return
        if envelope.get("origin") == self.origin or envelope.get("channel") != self.channel:
            return
        message = decode_message(json.dumps(envelope.get("message")))
        if message is not None:
            self._dispatch(message)


class MulticastProtocol(asyncio.DatagramProtocol):
    """UDP protocol feeding a MulticastTransport."""

    def __init__(self, owner: MulticastTransport) -> None:
        self.owner = owner

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        """Handle received datagram."""
        self.owner._datagram_received(data)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"Multicast socket error: {exc}")


class StorageTransport(Transport):
    """Fallback transport that writes messages to a shared storage key.

    Each broadcast overwrites ``<channel>-msg`` with the serialized message
    plus a ``_ts`` write timestamp, so identical consecutive messages still
    change the stored value. Storage contexts only notify *other*
    contexts, which keeps the sender from hearing itself.
    """

    name = "storage"

    def __init__(self, storage: SharedStorage, channel: str, clock: Optional[Callable[[], float]] = None) -> None:
        super().__init__(channel)
        self.storage = storage
        self.key = f"{channel}-msg"
        self._clock = clock
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._writes = 0

    async def start(self) -> None:
        if self._running:
            return
        probe_key = f"{self.key}-probe"
        try:
            self.storage.set(probe_key, "1")
            self.storage.remove(probe_key)
        except StorageError as e:
            raise TransportUnavailableError(
                f"Shared storage not writable: {e.message}",
                transport=self.name,
            ) from e
        self._unsubscribe = self.storage.subscribe(self._on_change)
        self.storage.watch(self.key)
        self._running = True

    async def stop(self) -> None:
        self._running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def broadcast(self, message: Message) -> None:
        if not self._running:
            return
        self._writes += 1
        data = message.to_dict()
        data["_ts"] = self._clock() if self._clock else message.timestamp
        data["_seq"] = self._writes
        try:
            self.storage.set(self.key, json.dumps(data))
        except StorageError as e:
            # Storage may be full or unavailable
            logger.debug(f"Storage broadcast dropped: {e}")

    def _on_change(self, key: str, value: Optional[str]) -> None:
        if key != self.key or not value:
            return
        message = decode_message(value)
        if message is not None:
            self._dispatch(message)


async def open_transport(
    config: CoordinatorConfig,
    storage: Optional[SharedStorage] = None,
    hub: Optional[ChannelHub] = None,
) -> Transport:
    """Create and start the transport selected by config.

    "auto" tries multicast, then shared storage, then falls back to a
    NullTransport. An explicit choice that cannot start also degrades to a
    NullTransport rather than failing the node.

    Args:
        config: Coordinator configuration
        storage: Shared storage for the storage backend (a FileStorage on
            config.storage_dir is created when omitted)
        hub: In-process hub, required for the "local" backend

    Returns:
        A started transport
    """
    candidates: List[Callable[[], Transport]] = []

    def local() -> Transport:
        if hub is None:
            raise TransportUnavailableError("No channel hub supplied", transport="local")
        return LocalChannelTransport(hub, config.channel_name)

    def multicast() -> Transport:
        return MulticastTransport(
            config.channel_name,
            group=config.multicast_group,
            port=config.resolved_multicast_port(),
        )

    def shared_storage() -> Transport:
        backing = storage
        if backing is None:
            try:
                backing = FileStorage(config.storage_dir, config.storage_poll_interval_ms)
            except StorageError as e:
                raise TransportUnavailableError(e.message, transport="storage") from e
        return StorageTransport(backing, config.channel_name, clock=config.clock)

    if config.transport == "local":
        candidates = [local]
    elif config.transport == "multicast":
        candidates = [multicast]
    elif config.transport == "storage":
        candidates = [shared_storage]
    elif config.transport == "auto":
        candidates = [multicast, shared_storage]

    for factory in candidates:
        try:
            transport = factory()
            await transport.start()
            logger.info(f"Using {transport.name} transport for channel {config.channel_name}")
            return transport
        except TransportUnavailableError as e:
            logger.warning(f"{e}, trying next backend")

    transport = NullTransport(config.channel_name)
    await transport.start()
    return transport
