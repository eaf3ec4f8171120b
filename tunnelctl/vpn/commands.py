"""Command templates and builders for network configuration and managed binaries."""

import ipaddress
from typing import List, Optional, Dict
from dataclasses import dataclass
from pathlib import Path

from .exceptions import VPNError


class CommandBuildError(VPNError):
    """Raised when command validation fails."""
    pass


def _ipv4(value: str) -> str:
    return str(ipaddress.IPv4Address(value))


def _prefix(value: str) -> str:
    return str(ipaddress.ip_network(value))


@dataclass
class Command:
    """Command builder with validation."""
    base_cmd: List[str]
    _valid_options: Optional[Dict[str, type]] = None

    def _validate_option(self, opt: str, value: Optional[str]) -> None:
        """Validate option and its value if validation rules exist."""
        if self._valid_options is not None:
            opt_name = opt.lstrip('-').replace('-', '_')

            if opt_name not in self._valid_options:
                valid_opts = ", ".join(sorted(self._valid_options.keys()))
                raise CommandBuildError(
                    f"Invalid option '{opt}' for command {self.base_cmd[0]}. "
                    f"Valid options are: {valid_opts}"
                )

            expected_type = self._valid_options[opt_name]
            if value is None:
                return
            if expected_type is type(None):
                raise CommandBuildError(f"Option '{opt}' does not take a value")
            try:
                if expected_type == Path:
                    Path(value)
                else:
                    expected_type(value)
            except ValueError:
                raise CommandBuildError(
                    f"Invalid value '{value}' for option '{opt}'. Expected {expected_type.__name__}"
                )

    def _validate_executable(self) -> None:
        """Validate that base command exists."""
        if not self.base_cmd:
            raise CommandBuildError("Command cannot be empty")

    @classmethod
    def from_str(cls, cmd: str, valid_options: Optional[Dict[str, type]] = None) -> 'Command':
        """Create command from string with optional validation rules."""
        command = cls(cmd.split(), valid_options)
        command._validate_executable()
        return command

    @classmethod
    def from_path(cls, binary: Path, valid_options: Optional[Dict[str, type]] = None) -> 'Command':
        """Create command for an executable whose path may contain spaces."""
        return cls([str(binary)], valid_options)

    def with_arg(self, arg: str) -> 'Command':
        """Add single argument."""
        return Command(self.base_cmd + [str(arg)], self._valid_options)

    def with_args(self, *args: str) -> 'Command':
        """Add multiple arguments."""
        return Command(self.base_cmd + [str(a) for a in args], self._valid_options)

    def with_param(self, key: str, value: str) -> 'Command':
        """Add a netsh style key=value parameter."""
        self._validate_option(key, str(value))
        return Command(self.base_cmd + [f"{key}={value}"], self._valid_options)

    def with_params(self, **kwargs: str) -> 'Command':
        """Add several key=value parameters, in keyword order."""
        cmd = self
        for key, value in kwargs.items():
            cmd = cmd.with_param(key, value)
        return cmd

    def with_flag(self, flag: str, value: Optional[str] = None) -> 'Command':
        """Add a single-dash flag, optionally followed by its value."""
        flag_clean = flag.lstrip('-').replace('_', '-')
        self._validate_option(flag_clean, str(value) if value is not None else None)
        cmd = self.base_cmd + [f"-{flag_clean}"]
        if value is not None:
            cmd.append(str(value))
        return Command(cmd, self._valid_options)

    def build(self) -> List[str]:
        """Get final command list."""
        self._validate_executable()
        return list(self.base_cmd)


NETSH_PARAMS = {
    'name': str,
    'interface': str,
    'source': str,
    'addr': _ipv4,
    'mask': _ipv4,
    'address': str,
    'store': str,
    'register': str,
    'validate': str,
    'index': int,
    'prefix': _prefix,
    'nexthop': str,
    'metric': int,
}

XRAY_OPTIONS = {
    'config': Path,
}

TUN2SOCKS_OPTIONS = {
    'tcp_auto_tuning': type(None),
    'device': str,
    'proxy': str,
}

NETSH = Command.from_str("netsh", valid_options=NETSH_PARAMS)
NETSH_IPV4 = NETSH.with_args("interface", "ipv4")
NETSH_IPV6 = NETSH.with_args("interface", "ipv6")

NETSH_IPV4_SET_ADDRESS = NETSH_IPV4.with_args("set", "address")
NETSH_IPV6_SET_ADDRESS = NETSH_IPV6.with_args("set", "address")
NETSH_IPV6_DELETE_ADDRESS = NETSH_IPV6.with_args("delete", "address")
NETSH_IPV4_SHOW_CONFIG = NETSH_IPV4.with_args("show", "config")

NETSH_IPV4_SET_DNS = NETSH_IPV4.with_args("set", "dnsservers")
NETSH_IPV4_ADD_DNS = NETSH_IPV4.with_args("add", "dnsservers")
NETSH_IPV6_SET_DNS = NETSH_IPV6.with_args("set", "dnsservers")
NETSH_IPV6_ADD_DNS = NETSH_IPV6.with_args("add", "dnsservers")

NETSH_IPV4_ADD_ROUTE = NETSH_IPV4.with_args("add", "route")
NETSH_IPV4_DELETE_ROUTE = NETSH_IPV4.with_args("delete", "route")
NETSH_IPV6_ADD_ROUTE = NETSH_IPV6.with_args("add", "route")
NETSH_IPV6_DELETE_ROUTE = NETSH_IPV6.with_args("delete", "route")

NETSH_SHOW_INTERFACE = NETSH.with_args("interface", "show", "interface")

ROUTE = Command.from_str("route")
ROUTE_ADD = ROUTE.with_arg("add")
ROUTE_DELETE = ROUTE.with_arg("delete")
ROUTE_PRINT = ROUTE.with_arg("print")

IPCONFIG_FLUSH_DNS = Command.from_str("ipconfig /flushdns")

POWERSHELL = Command.from_str("powershell -NoProfile -NonInteractive -Command")

GATEWAY_QUERY = (
    "(Get-NetRoute -DestinationPrefix 0.0.0.0/0 -ErrorAction Stop "
    "| Where-Object { $_.NextHop -ne '0.0.0.0' -and $_.NextHop -ne '%s' } "
    "| Sort-Object -Property RouteMetric | Select-Object -First 1).NextHop"
)
