"""Data models for tunnel management."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Tuple


class VPNStatus(Enum):
    """VPN connection status"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class Stage(Enum):
    """Connect sub-stages, in execution order"""
    GATEWAY_NAME_RESOLVED = 1
    CONFIG_WRITTEN = 2
    SERVER_IP_RESOLVED = 3
    TUNNEL_ESTABLISHED = 4
    CONFIG_CLEANED = 5
    CONNECTIVITY_VERIFIED = 6
    BRIDGE_ESTABLISHED = 7
    ADAPTER_IP_ASSIGNED = 8
    DNS_ASSIGNED = 9
    DEFAULT_ROUTE_ASSIGNED = 10
    GATEWAY_IP_RESOLVED = 11
    BYPASS_ROUTE_ASSIGNED = 12

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


class StageFlags:
    """
    Record of which connect stages have completed.

    Teardown consults these flags, so a flag is only ever set right after
    its stage succeeded and the whole set is cleared at the end of every
    disconnect.
    """

    def __init__(self):
        self._flags: Dict[Stage, bool] = {stage: False for stage in Stage}

    def set(self, stage: Stage) -> None:
        self._flags[stage] = True

    def clear(self, stage: Stage) -> None:
        self._flags[stage] = False

    def is_set(self, stage: Stage) -> bool:
        return self._flags[stage]

    def reset(self) -> None:
        self._flags = {stage: False for stage in Stage}

    def any(self) -> bool:
        return any(self._flags.values())

    def completed(self) -> Iterator[Stage]:
        return (stage for stage in Stage if self._flags[stage])

    def __repr__(self) -> str:
        done = ", ".join(stage.name for stage in self.completed())
        return f"StageFlags({done})"


@dataclass(frozen=True)
class DNSProvider:
    """Resolver provider with primary and secondary addresses per family"""
    id: int
    name: str
    ipv4: Tuple[str, ...]
    ipv6: Tuple[str, ...]


@dataclass
class Credentials:
    """Server credentials handed over by the client application"""
    protocol: str
    payload: str
    uid: str

    def __repr__(self) -> str:
        return f"Credentials(protocol={self.protocol!r}, uid={self.uid!r})"


@dataclass(frozen=True)
class TunnelDescriptor:
    """Decoded tunnel target and the rendered tunnel process configuration"""
    config: str = field(repr=False)
    endpoint: str
    port: int
    uid: str
    transport: str = ""
    socks_port: int = 10808
