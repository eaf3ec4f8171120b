import base64
import os
import sys
import textwrap
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from tunnelctl.config import ManagerOptions
from tunnelctl.vpn.dns_registry import DNSRegistry
from tunnelctl.vpn.exceptions import CommandError, ProcessError
from tunnelctl.vpn.network import NetworkConfigurator
from tunnelctl.vpn.probe import ConnectivityProbe
from tunnelctl.vpn.process import ProcessSupervisor


def encode_descriptor(raw: bytes) -> str:
    return base64.b64encode(raw).decode()


VALID_PAYLOAD = encode_descriptor(bytes([10, 0, 0, 7, 0x01, 0xBB, 8]))
VALID_CREDENTIALS = {"protocol": "V2RAY", "payload": VALID_PAYLOAD, "uid": "b831381d-6324-4d53-ad4f-8cda48b30811"}


class FakeRunner:
    """Records commands instead of running them; canned output by command prefix."""

    def __init__(self):
        self.commands: List[List[str]] = []
        self.outputs: Dict[Tuple[str, ...], str] = {}
        self.failures: List[Tuple[str, ...]] = []

    def respond(self, prefix, stdout: str) -> None:
        self.outputs[tuple(prefix)] = stdout

    def fail(self, prefix) -> None:
        self.failures.append(tuple(prefix))

    async def __call__(self, cmd, check=True, timeout=None):
        self.commands.append(list(cmd))
        for prefix in self.failures:
            if tuple(cmd[:len(prefix)]) == prefix:
                raise CommandError(f"Command failed: {' '.join(cmd)}", returncode=1)
        for prefix, stdout in self.outputs.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                return stdout, ""
        return "", ""


class FakeNetwork(NetworkConfigurator):
    """NetworkConfigurator that records operations and fails on request."""

    def __init__(self, gateway_ip="192.168.1.1", gateway_interface="Ethernet"):
        self.calls: List[str] = []
        self.fail_on = set()
        self.resolved_gateway_ip = gateway_ip
        self.resolved_interface = gateway_interface
        self.gateway_ip = None
        self.gateway_interface = None

    async def _record(self, name: str):
        self.calls.append(name)
        if name in self.fail_on:
            raise CommandError(f"{name} failed", returncode=1)

    async def assign_static_address(self, adapter):
        await self._record("assign_static_address")

    async def remove_static_address(self, adapter):
        await self._record("remove_static_address")

    async def get_address_mode(self, adapter):
        return "dhcp"

    async def assign_resolvers(self, adapter, provider, secondary_interface=None):
        await self._record("assign_resolvers")

    async def remove_resolvers(self, adapter, secondary_interface=None):
        await self._record("remove_resolvers")

    async def assign_default_route(self, adapter):
        await self._record("assign_default_route")

    async def remove_default_route(self, adapter):
        await self._record("remove_default_route")

    async def assign_bypass_route(self, server_ip, gateway_ip):
        await self._record("assign_bypass_route")

    async def remove_bypass_route(self, server_ip):
        await self._record("remove_bypass_route")

    async def check_adapter_available(self, adapter):
        await self._record("check_adapter_available")
        return True

    async def resolve_default_gateway_address(self):
        await self._record("resolve_default_gateway_address")
        self.gateway_ip = self.resolved_gateway_ip
        return self.gateway_ip

    async def resolve_gateway_interface_name(self):
        await self._record("resolve_gateway_interface_name")
        self.gateway_interface = self.resolved_interface
        return self.gateway_interface


class FakeProcesses(ProcessSupervisor):
    """ProcessSupervisor that pretends to spawn processes."""

    def __init__(self):
        super().__init__()
        self.started: List[Tuple[str, List[str]]] = []
        self.stopped: List[str] = []
        self.running = set()
        self.fail_start = set()
        self.fail_stop = set()

    def is_running(self, name):
        return name in self.running

    async def start(self, name, cmd, marker, timeout=None):
        self.started.append((name, cmd))
        if name in self.fail_start:
            raise ProcessError(f"{name} process exited with code 1 before it was ready")
        self.running.add(name)
        return 4242

    async def stop(self, name):
        self.stopped.append(name)
        self.running.discard(name)
        return name not in self.fail_stop


class FakeProbe(ConnectivityProbe):
    def __init__(self, result=True):
        super().__init__()
        self.result = result
        self.calls: List[Tuple[Optional[str], Optional[int]]] = []

    async def verify(self, proxy_host=None, proxy_port=None):
        self.calls.append((proxy_host, proxy_port))
        return self.result


@pytest.fixture
def fake_network():
    return FakeNetwork()


@pytest.fixture
def fake_processes():
    return FakeProcesses()


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def options(tmp_path):
    return ManagerOptions(
        binary_dir=tmp_path / "bin",
        temp_dir=tmp_path / "tmp",
        device_token_file=tmp_path / "device_token",
        stage_timeout=5.0,
        ready_timeout=5.0,
    )


@pytest.fixture
def dns_registry():
    return DNSRegistry()


@pytest.fixture
def fake_binaries(tmp_path):
    """Stand-in xray and tun2socks executables that print their readiness lines."""
    if sys.platform == "win32":
        pytest.skip("fake binaries are POSIX scripts")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    scripts = {
        "xray": """
            import sys, time
            assert sys.argv[1] == "-config"
            print("Xray 1.8.4 (Xray, Penetrates Everything.) Custom (go1.21.0 linux/amd64)", flush=True)
            print("[Warning] core: Xray 1.8.4 started", flush=True)
            time.sleep(60)
        """,
        "tun2socks": """
            import sys, time
            device = sys.argv[sys.argv.index("-device") + 1]
            proxy = sys.argv[sys.argv.index("-proxy") + 1]
            print(f'level=info msg="[STACK] {device} <-> {proxy}"', flush=True)
            time.sleep(60)
        """,
    }
    for name, body in scripts.items():
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        os.chmod(path, 0o755)
    return bin_dir
