"""Network stack configuration for the tunnel adapter."""

import ipaddress
import re
import socket
import sys
from abc import ABC, abstractmethod
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import psutil

from .command_factory import STATIC_IPV4, WindowsCommandFactory
from .exceptions import (
    AdapterNotFoundError,
    CommandError,
    ResolutionError,
    ValidationError,
    VPNError,
)
from .models import DNSProvider
from .utils import DEFAULT_COMMAND_TIMEOUT, Runner, run_command
from ..logging_utility import logger

_DHCP_ENABLED = re.compile(r"DHCP enabled:\s*(yes|no)", re.IGNORECASE)


def parse_default_gateway(route_table: str, exclude: Optional[str] = STATIC_IPV4) -> Optional[str]:
    """
    Extract the gateway of the 0.0.0.0/0 entry from `route print` output.

    Args:
        route_table: Text printed by the route command
        exclude: Gateway to ignore, by default the tunnel adapter's own next hop

    Returns:
        Gateway IPv4 address, or None if no default route is listed
    """
    for line in route_table.splitlines():
        parts = line.split()
        if len(parts) >= 4 and parts[0] == "0.0.0.0" and parts[1] == "0.0.0.0":
            try:
                gateway = str(ipaddress.IPv4Address(parts[2]))
            except ValueError:
                # "On-link" rows have no gateway address
                continue
            if gateway != exclude:
                return gateway
    return None


def split_host(endpoint: str) -> str:
    """Return the host part of a host or host:port string."""
    return endpoint.split(":", 1)[0].strip()


class NetworkConfigurator(ABC):
    """Operations against the OS network stack that a tunnel needs."""

    gateway_ip: Optional[str] = None
    gateway_interface: Optional[str] = None

    def forget_gateway(self) -> None:
        """Drop cached gateway lookups so the next connect resolves them again."""
        self.gateway_ip = None
        self.gateway_interface = None

    @abstractmethod
    async def assign_static_address(self, adapter: str) -> None: ...

    @abstractmethod
    async def remove_static_address(self, adapter: str) -> None: ...

    @abstractmethod
    async def get_address_mode(self, adapter: str) -> str: ...

    @abstractmethod
    async def assign_resolvers(self, adapter: str, provider: DNSProvider,
                               secondary_interface: Optional[str] = None) -> None: ...

    @abstractmethod
    async def remove_resolvers(self, adapter: str, secondary_interface: Optional[str] = None) -> None: ...

    @abstractmethod
    async def assign_default_route(self, adapter: str) -> None: ...

    @abstractmethod
    async def remove_default_route(self, adapter: str) -> None: ...

    @abstractmethod
    async def assign_bypass_route(self, server_ip: str, gateway_ip: str) -> None: ...

    @abstractmethod
    async def remove_bypass_route(self, server_ip: str) -> None: ...

    @abstractmethod
    async def check_adapter_available(self, adapter: str) -> bool: ...

    @abstractmethod
    async def resolve_default_gateway_address(self) -> str: ...

    @abstractmethod
    async def resolve_gateway_interface_name(self) -> str: ...

    async def resolve_endpoint_address(self, endpoint: str) -> str:
        """
        Resolve a server endpoint to an IPv4 literal.

        Args:
            endpoint: Host name, IPv4 address, or either followed by :port

        Returns:
            IPv4 address as a string
        """
        host = split_host(endpoint)
        if not host:
            raise ResolutionError(f"No host in endpoint '{endpoint}'")
        try:
            return str(ipaddress.IPv4Address(host))
        except ValueError:
            pass

        try:
            answer = await dns.asyncresolver.resolve(host, "A")
        except dns.exception.DNSException as e:
            raise ResolutionError(f"Failed to resolve {host} to IPv4: {e}") from e

        addresses = [record.address for record in answer]
        if not addresses:
            raise ResolutionError(f"Failed to resolve {host} to IPv4: no A records")
        return addresses[0]


class WindowsNetworkConfigurator(NetworkConfigurator):
    """NetworkConfigurator backed by netsh, route, ipconfig and PowerShell."""

    def __init__(self, runner: Optional[Runner] = None,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self._runner = runner or run_command
        self.command_timeout = command_timeout
        self.gateway_ip = None
        self.gateway_interface = None

    async def _run(self, cmd: List[str], check: bool = True):
        return await self._runner(cmd, check=check, timeout=self.command_timeout)

    async def assign_static_address(self, adapter: str) -> None:
        await self._run(WindowsCommandFactory.set_static_ipv4(adapter))
        await self._run(WindowsCommandFactory.set_static_ipv6(adapter))

    async def remove_static_address(self, adapter: str) -> None:
        await self._run(WindowsCommandFactory.set_dhcp_ipv4(adapter))
        await self._run(WindowsCommandFactory.delete_static_ipv6(adapter))

    async def get_address_mode(self, adapter: str) -> str:
        stdout, _ = await self._run(WindowsCommandFactory.show_ipv4_config(adapter))
        match = _DHCP_ENABLED.search(stdout)
        if not match:
            raise ResolutionError(f"Could not read address configuration of '{adapter}'")
        return "dhcp" if match.group(1).lower() == "yes" else "static"

    async def assign_resolvers(self, adapter: str, provider: DNSProvider,
                               secondary_interface: Optional[str] = None) -> None:
        interfaces = [adapter] + ([secondary_interface] if secondary_interface else [])
        for name in interfaces:
            await self._run(WindowsCommandFactory.set_dns(name, provider.ipv4[0]))
            await self._run(WindowsCommandFactory.add_dns(name, provider.ipv4[1]))
            await self._run(WindowsCommandFactory.set_dns(name, provider.ipv6[0], ipv6=True))
            await self._run(WindowsCommandFactory.add_dns(name, provider.ipv6[1], ipv6=True))
        await self._run(WindowsCommandFactory.flush_dns())
        logger.info(f"Resolvers of {provider.name} assigned to {', '.join(interfaces)}")

    async def remove_resolvers(self, adapter: str, secondary_interface: Optional[str] = None) -> None:
        interfaces = ([secondary_interface] if secondary_interface else []) + [adapter]
        for name in interfaces:
            await self._run(WindowsCommandFactory.reset_dns(name))
            await self._run(WindowsCommandFactory.reset_dns(name, ipv6=True))
        await self._run(WindowsCommandFactory.flush_dns())

    async def assign_default_route(self, adapter: str) -> None:
        await self._run(WindowsCommandFactory.add_default_route(adapter))
        await self._run(WindowsCommandFactory.add_default_route(adapter, ipv6=True))

    async def remove_default_route(self, adapter: str) -> None:
        await self._run(WindowsCommandFactory.delete_default_route(adapter))
        await self._run(WindowsCommandFactory.delete_default_route(adapter, ipv6=True))

    async def assign_bypass_route(self, server_ip: str, gateway_ip: str) -> None:
        if not server_ip or not gateway_ip:
            raise ValidationError("server_ip and gateway_ip are required")
        for value in (server_ip, gateway_ip):
            try:
                ipaddress.IPv4Address(value)
            except ValueError:
                raise ValidationError(f"'{value}' is not an IPv4 address")
        await self._run(WindowsCommandFactory.add_host_route(server_ip, gateway_ip))

    async def remove_bypass_route(self, server_ip: str) -> None:
        if not server_ip:
            raise ValidationError("server_ip is required")
        await self._run(WindowsCommandFactory.delete_host_route(server_ip))

    async def check_adapter_available(self, adapter: str) -> bool:
        try:
            stdout, _ = await self._run(WindowsCommandFactory.show_interface(adapter))
        except CommandError as e:
            raise AdapterNotFoundError(f'Adapter "{adapter}" not found.') from e
        if adapter not in stdout:
            raise AdapterNotFoundError(f'Adapter "{adapter}" not found.')
        return True

    async def resolve_default_gateway_address(self) -> str:
        try:
            stdout, _ = await self._run(WindowsCommandFactory.query_default_gateway())
            gateway = str(ipaddress.IPv4Address(stdout.strip().splitlines()[0].strip()))
        except (VPNError, ValueError, IndexError) as e:
            logger.warning(f"Default gateway lookup failed ({e}), parsing route table instead")
            stdout, _ = await self._run(WindowsCommandFactory.print_default_route())
            gateway = parse_default_gateway(stdout)
            if gateway is None:
                raise ResolutionError("Could not find default gateway in route table")

        self.gateway_ip = gateway
        logger.info(f"Default gateway: {gateway}")
        return gateway

    async def resolve_gateway_interface_name(self) -> str:
        if not self.gateway_ip:
            await self.resolve_default_gateway_address()
        gateway = ipaddress.IPv4Address(self.gateway_ip)

        for name, addresses in psutil.net_if_addrs().items():
            for addr in addresses:
                if addr.family != socket.AF_INET or not addr.netmask:
                    continue
                if ipaddress.IPv4Address(addr.address).is_loopback:
                    continue
                subnet = ipaddress.IPv4Network(f"{addr.address}/{addr.netmask}", strict=False)
                if gateway in subnet:
                    self.gateway_interface = name
                    logger.info(f"Gateway interface: {name}")
                    return name

        raise ResolutionError(f"No interface found containing the gateway IP {self.gateway_ip}")


def create_network_configurator(runner: Optional[Runner] = None,
                                command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> NetworkConfigurator:
    """Create the NetworkConfigurator for the current platform."""
    if sys.platform != "win32":
        logger.warning(
            f"Network configuration targets Windows; behaviour on {sys.platform} is unverified"
        )
    return WindowsNetworkConfigurator(runner=runner, command_timeout=command_timeout)
