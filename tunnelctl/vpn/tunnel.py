"""Staged tunnel bring-up and reverse-order teardown."""

import asyncio
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

from .command_factory import TunnelCommandFactory
from .dns_registry import DNSRegistry
from .exceptions import (
    ConnectivityError,
    StageError,
    StageTimeoutError,
    ValidationError,
    VPNError,
)
from .models import Stage, StageFlags, TunnelDescriptor
from .network import NetworkConfigurator
from .probe import ConnectivityProbe
from .process import ProcessSupervisor, ReadinessMarker
from ..logging_utility import logger

TUNNEL = "tunnel"
BRIDGE = "bridge"
CONFIG_FILE_NAME = "tunnel_config.json"
DEFAULT_STAGE_TIMEOUT = 60.0

TUNNEL_READY = ReadinessMarker(("Xray", "started"))

Action = Callable[[], Awaitable[Optional[bool]]]


def bridge_ready_marker(adapter: str, socks_port: int) -> ReadinessMarker:
    return ReadinessMarker.literal(f"[STACK] tun://{adapter} <-> socks5://127.0.0.1:{socks_port}")


def executable(binary_dir: Path, name: str) -> Path:
    return Path(binary_dir) / (f"{name}.exe" if sys.platform == "win32" else name)


class TunnelSupervisor:
    def __init__(self, network: NetworkConfigurator, processes: ProcessSupervisor,
                 probe: ConnectivityProbe, dns: DNSRegistry, adapter_name: str,
                 binary_dir: Path, config_dir: Path,
                 stage_timeout: float = DEFAULT_STAGE_TIMEOUT):
        self.network = network
        self.processes = processes
        self.probe = probe
        self.dns = dns
        self.adapter_name = adapter_name
        self.tunnel_binary = executable(binary_dir, "xray")
        self.bridge_binary = executable(binary_dir, "tun2socks")
        self.config_dir = Path(config_dir)
        self.config_path = self.config_dir / CONFIG_FILE_NAME
        self.stage_timeout = stage_timeout

        self.flags = StageFlags()
        self.descriptor: Optional[TunnelDescriptor] = None
        self.server_ip: Optional[str] = None
        self.gateway_interface: Optional[str] = None
        self.gateway_ip: Optional[str] = None

    async def connect(self, descriptor: TunnelDescriptor) -> bool:
        """
        Bring the tunnel up stage by stage.

        A failing stage undoes only its own work, then the whole attempt is
        rolled back through disconnect() and the original error is re-raised
        with the failing stage recorded on it.

        Args:
            descriptor: Decoded tunnel target with its rendered config

        Returns:
            bool: True once traffic is routed through the tunnel
        """
        if descriptor is None or not descriptor.config:
            raise ValidationError("config is required")
        if not descriptor.endpoint:
            raise ValidationError("endpoint is required")
        if not descriptor.port:
            raise ValidationError("port is required")
        if not descriptor.uid:
            raise ValidationError("uid is required")

        self.descriptor = descriptor
        self.network.forget_gateway()

        try:
            await self._stage(Stage.GATEWAY_NAME_RESOLVED, self._resolve_gateway_interface)
            await self._stage(Stage.CONFIG_WRITTEN, self._write_config, self._delete_config)
            await self._stage(Stage.SERVER_IP_RESOLVED, self._resolve_server_ip)
            await self._stage(Stage.TUNNEL_ESTABLISHED, self._start_tunnel, self._stop_tunnel)
            await self._stage(Stage.CONFIG_CLEANED, self._delete_config)
            await self._stage(Stage.CONNECTIVITY_VERIFIED, self._verify_connectivity)
            await self._stage(Stage.BRIDGE_ESTABLISHED, self._start_bridge, self._stop_bridge)
            await self._stage(Stage.ADAPTER_IP_ASSIGNED, self._assign_static_address, self._remove_static_address)
            await self._stage(Stage.DNS_ASSIGNED, self._assign_dns, self._remove_dns)
            await self._stage(Stage.DEFAULT_ROUTE_ASSIGNED, self._assign_default_route, self._remove_default_route)
            await self._stage(Stage.GATEWAY_IP_RESOLVED, self._resolve_gateway_ip)
            await self._stage(Stage.BYPASS_ROUTE_ASSIGNED, self._assign_bypass_route, self._remove_bypass_route)
        except asyncio.CancelledError:
            logger.warning("VPN connection cancelled, rolling back")
            await self.disconnect()
            raise
        except Exception as e:
            logger.error(f"VPN connection failed: {e}")
            await self.disconnect()
            raise

        logger.info("VPN connection established successfully")
        return True

    async def disconnect(self) -> bool:
        """
        Undo every completed stage in reverse order.

        Every teardown step runs even if an earlier one fails; the flags are
        cleared afterwards no matter what.

        Returns:
            bool: False if any teardown step failed
        """
        success = True
        logger.info("Disconnecting VPN")
        try:
            for stage, description, action in self._teardown_plan():
                if not self.flags.is_set(stage):
                    continue
                logger.info(description)
                try:
                    result = await asyncio.wait_for(action(), timeout=self.stage_timeout)
                except Exception as e:
                    logger.error(f"{description} failed: {str(e) or type(e).__name__}")
                    success = False
                    continue
                if result is False:
                    logger.error(f"{description} failed")
                    success = False
        finally:
            self.flags.reset()
            self.descriptor = None
            self.server_ip = None
            self.gateway_ip = None
            self.gateway_interface = None

        if success:
            logger.info("VPN disconnected successfully")
        else:
            logger.warning("VPN disconnected with errors")
        return success

    def _teardown_plan(self) -> List[Tuple[Stage, str, Action]]:
        return [
            (Stage.BYPASS_ROUTE_ASSIGNED, "Removing bypass route", self._remove_bypass_route),
            (Stage.DEFAULT_ROUTE_ASSIGNED, "Removing default route", self._remove_default_route),
            (Stage.DNS_ASSIGNED, "Removing DNS", self._remove_dns),
            (Stage.ADAPTER_IP_ASSIGNED, "Removing static IP from adapter", self._remove_static_address),
            (Stage.BRIDGE_ESTABLISHED, "Stopping bridge process", self._stop_bridge),
            (Stage.TUNNEL_ESTABLISHED, "Stopping tunnel process", self._stop_tunnel),
            (Stage.CONFIG_WRITTEN, "Cleaning up tunnel config from disk", self._delete_config),
        ]

    async def _stage(self, stage: Stage, action: Action, rollback: Optional[Action] = None) -> None:
        logger.info(f"Stage {stage.value}/{len(Stage)}: {stage.label}")
        try:
            await asyncio.wait_for(action(), timeout=self.stage_timeout)
        except asyncio.CancelledError:
            logger.warning(f"Stage '{stage.label}' cancelled")
            if rollback is not None:
                await self._compensate(stage, rollback)
            raise
        except Exception as e:
            error = self._stage_error(stage, e)
            logger.error(f"Stage '{stage.label}' failed: {error}")
            if rollback is not None:
                await self._compensate(stage, rollback)
            if error is e:
                raise
            raise error from e
        self.flags.set(stage)

    def _stage_error(self, stage: Stage, error: Exception) -> VPNError:
        if isinstance(error, VPNError):
            error.stage = stage
            return error
        if isinstance(error, asyncio.TimeoutError):
            return StageTimeoutError(f"{stage.label} timed out after {self.stage_timeout}s", stage=stage)
        return StageError(f"{stage.label} failed: {error}", stage=stage)

    async def _compensate(self, stage: Stage, rollback: Action) -> None:
        try:
            result = await asyncio.wait_for(rollback(), timeout=self.stage_timeout)
        except Exception as e:
            logger.error(f"Rollback of '{stage.label}' failed: {str(e) or type(e).__name__}")
            return
        if result is False:
            logger.error(f"Rollback of '{stage.label}' failed")

    async def _resolve_gateway_interface(self) -> None:
        self.gateway_interface = await self.network.resolve_gateway_interface_name()

    async def _write_config(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(self.descriptor.config, encoding="utf-8")
        os.chmod(self.config_path, 0o600)

    async def _delete_config(self) -> None:
        self.config_path.unlink(missing_ok=True)

    async def _resolve_server_ip(self) -> None:
        self.server_ip = await self.network.resolve_endpoint_address(self.descriptor.endpoint)
        logger.info(f"Resolved server IP: {self.server_ip}")

    async def _start_tunnel(self) -> None:
        cmd = TunnelCommandFactory.start_tunnel(self.tunnel_binary, self.config_path)
        await self.processes.start(TUNNEL, cmd, TUNNEL_READY)

    async def _stop_tunnel(self) -> bool:
        try:
            return await self.processes.stop(TUNNEL)
        finally:
            self.flags.clear(Stage.TUNNEL_ESTABLISHED)

    async def _verify_connectivity(self) -> None:
        if not await self.probe.verify("127.0.0.1", self.descriptor.socks_port):
            raise ConnectivityError("Failed to check internet connectivity through socks proxy")

    async def _start_bridge(self) -> None:
        socks_port = self.descriptor.socks_port
        cmd = TunnelCommandFactory.start_bridge(self.bridge_binary, self.adapter_name, socks_port)
        await self.processes.start(BRIDGE, cmd, bridge_ready_marker(self.adapter_name, socks_port))

    async def _stop_bridge(self) -> bool:
        try:
            return await self.processes.stop(BRIDGE)
        finally:
            self.flags.clear(Stage.BRIDGE_ESTABLISHED)

    async def _assign_static_address(self) -> None:
        await self.network.check_adapter_available(self.adapter_name)
        await self.network.assign_static_address(self.adapter_name)

    async def _remove_static_address(self) -> None:
        await self.network.remove_static_address(self.adapter_name)

    async def _assign_dns(self) -> None:
        await self.network.assign_resolvers(self.adapter_name, self.dns.current(), self.gateway_interface)

    async def _remove_dns(self) -> None:
        await self.network.remove_resolvers(self.adapter_name, self.gateway_interface)

    async def _assign_default_route(self) -> None:
        await self.network.assign_default_route(self.adapter_name)

    async def _remove_default_route(self) -> None:
        await self.network.remove_default_route(self.adapter_name)

    async def _resolve_gateway_ip(self) -> None:
        self.gateway_ip = await self.network.resolve_default_gateway_address()

    async def _assign_bypass_route(self) -> None:
        await self.network.assign_bypass_route(self.server_ip, self.gateway_ip)

    async def _remove_bypass_route(self) -> None:
        await self.network.remove_bypass_route(self.server_ip)
