"""UPnP port forwarding lifecycle manager."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import weakref
from collections.abc import Awaitable, Callable
from typing import Protocol

from natkeeper.config import get_upnp_config
from natkeeper.models import UPnPConfig
from natkeeper.nat.description import ControlURLResolver
from natkeeper.nat.exceptions import DiscoveryError, LocalAddressError, UPnPError
from natkeeper.nat.local_address import get_internal_address
from natkeeper.nat.port_mapping import (
    ActiveMapping,
    ControlEndpoint,
    ManagerState,
    MappingRequest,
)
from natkeeper.nat.soap import PortMappingClient, build_description
from natkeeper.nat.ssdp import SSDPDiscoverer
from natkeeper.utils.logging_config import log_exception
from natkeeper.utils.tasks import BackgroundTaskGroup

logger = logging.getLogger(__name__)

# Managers started through start(); keeps their tasks referenced until exit
_running_managers: set[PortForwardManager] = set()
# Releases scheduled by finalizers that ran inside a live event loop
_pending_releases: set[asyncio.Task] = set()


class Discoverer(Protocol):
    def discover(self) -> Awaitable[list[str]]: ...


class Resolver(Protocol):
    def resolve(self, url: str) -> Awaitable[ControlEndpoint | None]: ...


class MappingClient(Protocol):
    def add_mapping(
        self, endpoint: ControlEndpoint, request: MappingRequest
    ) -> Awaitable[bool]: ...

    def delete_mapping(
        self, endpoint: ControlEndpoint, protocol: str, external_port: int
    ) -> Awaitable[bool]: ...


async def release_mapping(
    client: MappingClient,
    active: ActiveMapping,
    clock: Callable[[], float] = time.time,
) -> bool:
    """Delete ``active`` from its gateway unless the lease already ran out.

    Never raises; a failed release only gets logged.

    Returns:
        True if the gateway confirmed the deletion

    """
    request = active.request
    if active.is_expired(clock()):
        logger.debug(
            "Mapping %s %d already expired on %s, not deleting",
            request.protocol,
            request.external_port,
            active.endpoint.host,
        )
        return False

    try:
        return await client.delete_mapping(
            active.endpoint, request.protocol, request.external_port
        )
    except Exception:
        logger.warning(
            "Failed to remove %s port mapping %d from %s",
            request.protocol,
            request.external_port,
            active.endpoint.host,
            exc_info=True,
        )
        return False


def _release_on_finalize(
    client: MappingClient,
    active: ActiveMapping,
    clock: Callable[[], float],
) -> None:
    """Finalizer body: release the mapping from synchronous context."""
    coro = release_mapping(client, active, clock)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None:
        # Collected while a loop is running: let the loop do the request
        task = loop.create_task(coro)
        _pending_releases.add(task)
        task.add_done_callback(_pending_releases.discard)
        return

    try:
        asyncio.run(coro)
    except Exception:
        # Interpreter shutdown can refuse new event loops or executors
        logger.warning(
            "Could not release %s port mapping %d at exit",
            active.request.protocol,
            active.request.external_port,
            exc_info=True,
        )


class PortForwardManager:
    """Keeps one UPnP port mapping open for the lifetime of the process.

    Every cycle rediscovers gateways from scratch, tries them in the order they
    answered and stops at the first one that accepts the mapping. Cycles repeat
    every lease duration until the manager is stopped or the process exits.
    """

    def __init__(
        self,
        internal_port: int,
        protocol: str = "TCP",
        external_port: int | None = None,
        *,
        config: UPnPConfig | None = None,
        discoverer: Discoverer | None = None,
        resolver: Resolver | None = None,
        client: MappingClient | None = None,
        address_resolver: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize manager.

        Args:
            internal_port: Local port that should be reachable from outside
            protocol: "TCP" or "UDP"
            external_port: Port to open on the gateway (defaults to internal_port)
            config: UPnP settings (defaults to the global configuration)
            discoverer: Finds gateway description URLs
            resolver: Resolves a description URL to a control endpoint
            client: Sends the port mapping actions
            address_resolver: Returns this host's LAN address
            clock: Wall clock used for lease expiry

        """
        self.config = config or get_upnp_config()
        self.internal_port = internal_port
        self.external_port = external_port or internal_port
        self.protocol = protocol.upper()
        if self.protocol not in ("TCP", "UDP"):
            msg = f"Unsupported protocol: {protocol!r}"
            raise ValueError(msg)

        self.discoverer = discoverer or SSDPDiscoverer(window=self.config.discovery_window)
        self.resolver = resolver or ControlURLResolver(
            service_type=self.config.service_type,
            timeout=self.config.http_timeout,
        )
        self.client = client or PortMappingClient(
            service_type=self.config.service_type,
            timeout=self.config.http_timeout,
        )
        self.address_resolver = address_resolver or functools.partial(
            get_internal_address,
            (self.config.address_probe_host, self.config.address_probe_port),
        )
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.state = ManagerState.IDLE
        self.active_mapping: ActiveMapping | None = None
        self.cycles = 0
        self._finalizer: weakref.finalize | None = None
        self._tasks = BackgroundTaskGroup()
        self._loop_task: asyncio.Task | None = None

    @property
    def interval(self) -> float:
        """Seconds between cycles; one lease so the mapping never lapses."""
        return float(self.config.lease_duration)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def build_request(self, internal_ip: str) -> MappingRequest:
        return MappingRequest(
            protocol=self.protocol,
            external_port=self.external_port,
            internal_port=self.internal_port,
            internal_ip=internal_ip,
            description=build_description(
                self.config.description_prefix,
                internal_ip,
                self.internal_port,
                self.external_port,
                self.protocol,
            ),
            lease_duration=self.config.lease_duration,
        )

    async def run_cycle(self) -> bool:
        """Discover gateways and open the mapping on the first that accepts it.

        Returns:
            True if a gateway now forwards the port

        Raises:
            LocalAddressError: If the LAN address is unknown (aborts the cycle)

        """
        self.cycles += 1
        self.state = ManagerState.DISCOVERING

        try:
            urls = await self.discoverer.discover()
        except DiscoveryError as e:
            self.logger.warning("UPnP discovery failed: %s", e)
            self.state = ManagerState.IDLE
            return False

        if not urls:
            self.logger.warning("No UPnP root devices found")
            self.state = ManagerState.IDLE
            return False

        internal_ip: str | None = None
        for url in urls:
            self.state = ManagerState.DISCOVERING
            try:
                endpoint = await self.resolver.resolve(url)
            except UPnPError as e:
                self.logger.warning("Skipping UPnP device at %s: %s", url, e)
                continue
            if endpoint is None:
                continue

            if internal_ip is None:
                try:
                    internal_ip = self.address_resolver()
                except LocalAddressError:
                    self.state = ManagerState.IDLE
                    raise

            request = self.build_request(internal_ip)
            self.state = ManagerState.MAPPING
            try:
                accepted = await self.client.add_mapping(endpoint, request)
            except UPnPError as e:
                self.logger.warning(
                    "AddPortMapping on %s failed for %s port %d: %s",
                    endpoint.host,
                    self.protocol,
                    self.external_port,
                    e,
                )
                accepted = False

            if accepted:
                self._activate(endpoint, request)
                return True

            self.logger.warning(
                "UPnP router %s refused to forward %s port %d",
                endpoint.host,
                self.protocol,
                self.external_port,
            )

        self.logger.warning(
            "No UPnP gateway forwarded %s port %d (%d device(s) tried)",
            self.protocol,
            self.external_port,
            len(urls),
        )
        self.state = ManagerState.IDLE
        return False

    def _activate(self, endpoint: ControlEndpoint, request: MappingRequest) -> None:
        active = ActiveMapping(
            endpoint=endpoint,
            request=request,
            expires_at=self.clock() + request.lease_duration,
        )
        self.active_mapping = active
        self.state = ManagerState.ACTIVE
        self._register_cleanup(active)

    def _register_cleanup(self, active: ActiveMapping) -> None:
        # Only the newest mapping is released; older ones expire on their own.
        if self._finalizer is not None:
            self._finalizer.detach()
        self._finalizer = weakref.finalize(
            self, _release_on_finalize, self.client, active, self.clock
        )

    async def _run(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except LocalAddressError as e:
                log_exception(
                    self.logger, e, f"Cannot map {self.protocol} port {self.external_port}"
                )
            except Exception as e:
                self.state = ManagerState.IDLE
                log_exception(
                    self.logger,
                    e,
                    f"Problem in UPnP cycle for {self.protocol} port {self.external_port}",
                )
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Run cycles in the background; must be called with a running loop."""
        if self.running:
            return self._loop_task  # type: ignore[return-value]
        self._loop_task = self._tasks.create(
            self._run(), name=f"upnp-{self.protocol.lower()}-{self.external_port}"
        )
        self.logger.debug(
            "Started UPnP manager for %s port %d (interval %.0fs)",
            self.protocol,
            self.external_port,
            self.interval,
        )
        return self._loop_task

    def detach_cleanup(self) -> bool:
        """Leave the active mapping on the gateway until its lease runs out.

        Returns:
            True if a pending cleanup was cancelled

        """
        if self._finalizer is None:
            return False
        detached = self._finalizer.detach() is not None
        self._finalizer = None
        return detached

    async def release(self) -> bool:
        """Release the active mapping now instead of at exit.

        Returns:
            True if the gateway confirmed the deletion

        """
        if self._finalizer is None:
            return False
        detached = self._finalizer.detach()
        self._finalizer = None
        if detached is None:
            return False
        _, _, (client, active, clock), _ = detached
        return await release_mapping(client, active, clock)

    async def stop(self, release: bool = True) -> None:
        """Cancel the background loop and optionally release the mapping."""
        await self._tasks.cancel_and_wait()
        self._loop_task = None
        _running_managers.discard(self)
        if release:
            await self.release()
        self.state = ManagerState.IDLE


def start(port: int, protocol: str = "TCP") -> PortForwardManager:
    """Forward ``port`` through the local gateway, renewing until exit.

    Returns immediately; the mapping is attempted in a background task on the
    running event loop and removed again when the process exits.
    """
    manager = PortForwardManager(port, protocol)
    manager.start()
    _running_managers.add(manager)
    return manager
