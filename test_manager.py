import asyncio

import pytest

from conftest import VALID_CREDENTIALS, VALID_PAYLOAD
from tunnelctl.vpn import manager as manager_module
from tunnelctl.vpn.exceptions import (
    CommandError,
    ConcurrencyError,
    MalformedDescriptorError,
    UnsupportedProtocolError,
    ValidationError,
)
from tunnelctl.vpn.manager import VPNManager
from tunnelctl.vpn.models import Credentials, Stage, VPNStatus
from tunnelctl.vpn.tunnel import BRIDGE, TUNNEL


@pytest.fixture
def manager(options, fake_network, fake_processes, fake_probe):
    return VPNManager(options, network=fake_network, processes=fake_processes, probe=fake_probe)


@pytest.fixture
def statuses(manager):
    seen = []
    manager.subscribe(seen.append)
    return seen


class Gate:
    """Holds the first connect stage open until released."""

    def __init__(self, network):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self._resolve = network.resolve_gateway_interface_name
        network.resolve_gateway_interface_name = self

    async def __call__(self):
        self.entered.set()
        await self.release.wait()
        return await self._resolve()


async def test_connect_then_disconnect_status_sequence(manager, statuses, fake_processes):
    assert await manager.connect(VALID_CREDENTIALS) is True
    assert manager.get_status() is VPNStatus.CONNECTED
    assert fake_processes.running == {TUNNEL, BRIDGE}

    assert await manager.disconnect() is True

    assert statuses == [VPNStatus.CONNECTING, VPNStatus.CONNECTED,
                        VPNStatus.DISCONNECTING, VPNStatus.DISCONNECTED]
    assert fake_processes.running == set()
    assert not manager.stage_flags.any()


async def test_accepts_credentials_object(manager):
    credentials = Credentials(**VALID_CREDENTIALS)

    assert await manager.connect(credentials) is True
    assert manager.protocol == "V2RAY"


async def test_connect_when_connected_is_rejected(manager, statuses, fake_processes):
    await manager.connect(VALID_CREDENTIALS)
    started = list(fake_processes.started)

    with pytest.raises(ConcurrencyError, match="already connected"):
        await manager.connect(VALID_CREDENTIALS)

    assert fake_processes.started == started
    assert manager.get_status() is VPNStatus.CONNECTED
    assert statuses == [VPNStatus.CONNECTING, VPNStatus.CONNECTED]


async def test_connect_while_connecting_is_rejected(manager, fake_network, fake_processes):
    gate = Gate(fake_network)
    first = asyncio.create_task(manager.connect(VALID_CREDENTIALS))
    await gate.entered.wait()

    with pytest.raises(ConcurrencyError, match="connecting"):
        await manager.connect(VALID_CREDENTIALS)
    assert await manager.disconnect() is False
    assert manager.get_status() is VPNStatus.CONNECTING

    gate.release.set()
    assert await first is True
    assert [name for name, _ in fake_processes.started] == [TUNNEL, BRIDGE]
    assert manager.get_status() is VPNStatus.CONNECTED


async def test_unsupported_protocol_has_no_side_effects(manager, statuses, fake_network, fake_processes):
    credentials = dict(VALID_CREDENTIALS, protocol="WIREGUARD")

    with pytest.raises(UnsupportedProtocolError):
        await manager.connect(credentials)

    assert fake_network.calls == []
    assert fake_processes.started == []
    assert statuses == []
    assert manager.get_status() is VPNStatus.DISCONNECTED
    assert manager.protocol is None


@pytest.mark.parametrize("field", ["protocol", "payload", "uid"])
async def test_missing_fields_are_rejected(manager, fake_network, field):
    credentials = dict(VALID_CREDENTIALS)
    credentials[field] = ""

    with pytest.raises(ValidationError, match=f"{field} is required"):
        await manager.connect(credentials)

    assert fake_network.calls == []


async def test_malformed_payload_is_rejected(manager, statuses, fake_processes):
    credentials = dict(VALID_CREDENTIALS, payload=VALID_PAYLOAD[:-4] + "AAAAAAAA")

    with pytest.raises(MalformedDescriptorError):
        await manager.connect(credentials)

    assert fake_processes.started == []
    assert statuses == []


async def test_failed_connect_rolls_back_to_disconnected(manager, statuses, fake_network, fake_processes):
    fake_network.fail_on = {"assign_default_route"}

    with pytest.raises(CommandError) as excinfo:
        await manager.connect(VALID_CREDENTIALS)

    assert excinfo.value.stage is Stage.DEFAULT_ROUTE_ASSIGNED
    assert statuses == [VPNStatus.CONNECTING, VPNStatus.DISCONNECTED]
    assert not manager.stage_flags.any()
    assert fake_processes.running == set()
    assert fake_processes.stopped == [BRIDGE, TUNNEL]
    assert fake_network.calls.count("remove_static_address") == 1
    assert manager.get_status() is VPNStatus.DISCONNECTED

    # a fresh attempt is allowed after a failed one
    fake_network.fail_on = set()
    assert await manager.connect(VALID_CREDENTIALS) is True


async def test_disconnect_without_connect(manager, statuses, fake_processes):
    assert await manager.disconnect() is True
    assert statuses == [VPNStatus.DISCONNECTED]
    assert fake_processes.stopped == []


async def test_disconnect_reports_partial_teardown(manager, fake_network):
    await manager.connect(VALID_CREDENTIALS)
    fake_network.fail_on = {"remove_resolvers"}

    assert await manager.disconnect() is False
    assert manager.get_status() is VPNStatus.DISCONNECTED
    assert not manager.stage_flags.any()


async def test_unsubscribe_and_failing_subscriber(manager):
    seen = []

    def broken(status):
        raise RuntimeError("subscriber bug")

    manager.subscribe(broken)
    unsubscribe = manager.subscribe(seen.append)
    await manager.connect(VALID_CREDENTIALS)
    unsubscribe()
    await manager.disconnect()

    assert seen == [VPNStatus.CONNECTING, VPNStatus.CONNECTED]
    assert manager.get_status() is VPNStatus.DISCONNECTED


def test_saved_credential_token(manager, options):
    assert manager.check_has_saved_credential_token() is False

    options.device_token_file.write_text("   \n")
    assert manager.check_has_saved_credential_token() is False

    options.device_token_file.write_text("token-123\n")
    assert manager.check_has_saved_credential_token() is True


def test_config_dir_uses_protocol_tag(manager, options):
    assert manager.config_dir.parent == options.temp_dir
    assert manager.config_dir.name.startswith("vpnq-")


def test_cleanup_spawns_detached_removal(manager, monkeypatch):
    spawned = []
    monkeypatch.setattr(manager_module, "spawn_detached", spawned.append)

    manager.cleanup()

    assert len(spawned) == 1
    assert str(manager.config_dir) in spawned[0]


def test_cleanup_skips_missing_directory(manager, monkeypatch):
    spawned = []
    monkeypatch.setattr(manager_module, "spawn_detached", spawned.append)
    manager.config_dir.rmdir()

    manager.cleanup()

    assert spawned == []


async def test_cancelled_connect_returns_to_disconnected(manager, statuses, fake_network, fake_processes):
    entered = asyncio.Event()

    async def hang(adapter, provider, secondary_interface=None):
        entered.set()
        await asyncio.sleep(30)

    fake_network.assign_resolvers = hang
    task = asyncio.create_task(manager.connect(VALID_CREDENTIALS))
    await entered.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert manager.get_status() is VPNStatus.DISCONNECTED
    assert statuses == [VPNStatus.CONNECTING, VPNStatus.DISCONNECTED]
    assert fake_processes.running == set()
    assert not manager.stage_flags.any()
    assert "remove_static_address" in fake_network.calls

    # the guards are released, so the next request is served normally
    assert await manager.disconnect() is True
    del fake_network.assign_resolvers
    statuses.clear()
    assert await manager.connect(VALID_CREDENTIALS) is True
    assert statuses == [VPNStatus.CONNECTING, VPNStatus.CONNECTED]
