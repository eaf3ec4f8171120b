"""Factory for creating network configuration and tunnel process commands."""

from pathlib import Path
from .commands import (
    Command,
    GATEWAY_QUERY,
    IPCONFIG_FLUSH_DNS,
    NETSH_IPV4_ADD_DNS,
    NETSH_IPV4_ADD_ROUTE,
    NETSH_IPV4_DELETE_ROUTE,
    NETSH_IPV4_SET_ADDRESS,
    NETSH_IPV4_SET_DNS,
    NETSH_IPV4_SHOW_CONFIG,
    NETSH_IPV6_ADD_DNS,
    NETSH_IPV6_ADD_ROUTE,
    NETSH_IPV6_DELETE_ADDRESS,
    NETSH_IPV6_DELETE_ROUTE,
    NETSH_IPV6_SET_ADDRESS,
    NETSH_IPV6_SET_DNS,
    NETSH_SHOW_INTERFACE,
    POWERSHELL,
    ROUTE_ADD,
    ROUTE_DELETE,
    ROUTE_PRINT,
    TUN2SOCKS_OPTIONS,
    XRAY_OPTIONS,
)

STATIC_IPV4 = "192.168.123.1"
STATIC_IPV4_MASK = "255.255.255.0"
STATIC_IPV6 = "fd12:3456:789a:1::1"
STATIC_IPV6_PREFIX = 64


class WindowsCommandFactory:
    """Factory for netsh/route based network configuration commands."""

    @staticmethod
    def set_static_ipv4(adapter: str) -> list[str]:
        return NETSH_IPV4_SET_ADDRESS.with_params(
            name=adapter,
            source="static",
            addr=STATIC_IPV4,
            mask=STATIC_IPV4_MASK,
        ).build()

    @staticmethod
    def set_static_ipv6(adapter: str) -> list[str]:
        return NETSH_IPV6_SET_ADDRESS.with_params(
            interface=adapter,
            address=f"{STATIC_IPV6}/{STATIC_IPV6_PREFIX}",
            store="persistent",
        ).build()

    @staticmethod
    def set_dhcp_ipv4(adapter: str) -> list[str]:
        return NETSH_IPV4_SET_ADDRESS.with_params(name=adapter, source="dhcp").build()

    @staticmethod
    def delete_static_ipv6(adapter: str) -> list[str]:
        return NETSH_IPV6_DELETE_ADDRESS.with_params(
            interface=adapter,
            address=STATIC_IPV6,
        ).build()

    @staticmethod
    def show_ipv4_config(adapter: str) -> list[str]:
        return NETSH_IPV4_SHOW_CONFIG.with_params(name=adapter).build()

    @staticmethod
    def set_dns(adapter: str, address: str, ipv6: bool = False) -> list[str]:
        """Create command replacing the adapter's resolvers with a single static one."""
        base = NETSH_IPV6_SET_DNS if ipv6 else NETSH_IPV4_SET_DNS
        return base.with_params(
            name=adapter,
            source="static",
            address=address,
            register="none",
            validate="no",
        ).build()

    @staticmethod
    def add_dns(adapter: str, address: str, index: int = 2, ipv6: bool = False) -> list[str]:
        base = NETSH_IPV6_ADD_DNS if ipv6 else NETSH_IPV4_ADD_DNS
        return base.with_params(
            name=adapter,
            address=address,
            index=str(index),
            validate="no",
        ).build()

    @staticmethod
    def reset_dns(adapter: str, ipv6: bool = False) -> list[str]:
        """Create command reverting the adapter to DHCP provided resolvers."""
        base = NETSH_IPV6_SET_DNS if ipv6 else NETSH_IPV4_SET_DNS
        return base.with_params(name=adapter, source="dhcp").build()

    @staticmethod
    def flush_dns() -> list[str]:
        return IPCONFIG_FLUSH_DNS.build()

    @staticmethod
    def add_default_route(adapter: str, ipv6: bool = False) -> list[str]:
        base = NETSH_IPV6_ADD_ROUTE if ipv6 else NETSH_IPV4_ADD_ROUTE
        return base.with_params(
            prefix="::/0" if ipv6 else "0.0.0.0/0",
            interface=adapter,
            nexthop=STATIC_IPV6 if ipv6 else STATIC_IPV4,
            metric="1",
        ).build()

    @staticmethod
    def delete_default_route(adapter: str, ipv6: bool = False) -> list[str]:
        base = NETSH_IPV6_DELETE_ROUTE if ipv6 else NETSH_IPV4_DELETE_ROUTE
        return base.with_params(
            prefix="::/0" if ipv6 else "0.0.0.0/0",
            interface=adapter,
            nexthop=STATIC_IPV6 if ipv6 else STATIC_IPV4,
        ).build()

    @staticmethod
    def add_host_route(host_ip: str, gateway_ip: str) -> list[str]:
        return ROUTE_ADD.with_args(host_ip, "mask", "255.255.255.255", gateway_ip).build()

    @staticmethod
    def delete_host_route(host_ip: str) -> list[str]:
        return ROUTE_DELETE.with_arg(host_ip).build()

    @staticmethod
    def show_interface(adapter: str) -> list[str]:
        return NETSH_SHOW_INTERFACE.with_params(name=adapter).build()

    @staticmethod
    def query_default_gateway() -> list[str]:
        return POWERSHELL.with_arg(GATEWAY_QUERY % STATIC_IPV4).build()

    @staticmethod
    def print_default_route() -> list[str]:
        return ROUTE_PRINT.with_arg("0.0.0.0").build()

    @staticmethod
    def remove_directory(path: Path) -> list[str]:
        return ["cmd", "/c", "rd", "/s", "/q", str(path)]


class TunnelCommandFactory:
    """Factory for the tunnel and bridge process command lines."""

    @staticmethod
    def start_tunnel(binary: Path, config_path: Path) -> list[str]:
        return (
            Command.from_path(binary, XRAY_OPTIONS)
            .with_flag("config", str(config_path))
            .build()
        )

    @staticmethod
    def start_bridge(binary: Path, adapter: str, socks_port: int) -> list[str]:
        return (
            Command.from_path(binary, TUN2SOCKS_OPTIONS)
            .with_flag("tcp_auto_tuning")
            .with_flag("device", f"tun://{adapter}")
            .with_flag("proxy", f"socks5://127.0.0.1:{socks_port}")
            .build()
        )


class PosixCommandFactory:
    """Factory for cleanup commands on Linux and macOS hosts."""

    @staticmethod
    def remove_directory(path: Path) -> list[str]:
        return ["rm", "-rf", str(path)]
