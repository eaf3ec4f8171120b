"""VPN manager: the single entry point for connecting and disconnecting."""

import sys
import tempfile
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Union

from .command_factory import PosixCommandFactory, WindowsCommandFactory
from .dns_registry import DNSRegistry
from .exceptions import ConcurrencyError, MalformedDescriptorError, ValidationError
from .models import Credentials, StageFlags, VPNStatus
from .network import NetworkConfigurator, create_network_configurator
from .probe import ConnectivityProbe
from .process import ProcessSupervisor
from .protocol import ProtocolConfigBuilder
from .tunnel import TunnelSupervisor
from .utils import spawn_detached
from ..config import ManagerOptions
from ..logging_utility import logger

StatusCallback = Callable[[VPNStatus], None]


class VPNManager:
    def __init__(self, options: Optional[ManagerOptions] = None,
                 network: Optional[NetworkConfigurator] = None,
                 processes: Optional[ProcessSupervisor] = None,
                 probe: Optional[ConnectivityProbe] = None,
                 builder: Optional[ProtocolConfigBuilder] = None,
                 dns: Optional[DNSRegistry] = None):
        self.options = options or ManagerOptions()
        self.dns = dns or DNSRegistry(index=self.options.dns_index)
        self.builder = builder or ProtocolConfigBuilder()
        self.network = network or create_network_configurator(
            command_timeout=self.options.command_timeout)
        self.processes = processes or ProcessSupervisor(ready_timeout=self.options.ready_timeout)
        self.probe = probe or ConnectivityProbe()

        temp_dir = Path(self.options.temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir = Path(tempfile.mkdtemp(prefix=f"{self.options.protocol_tag}-", dir=temp_dir))

        self.tunnel = TunnelSupervisor(
            network=self.network,
            processes=self.processes,
            probe=self.probe,
            dns=self.dns,
            adapter_name=self.options.adapter_name,
            binary_dir=self.options.binary_dir,
            config_dir=self.config_dir,
            stage_timeout=self.options.stage_timeout,
        )

        self.protocol: Optional[str] = None
        self._connected = False
        self._connect_in_progress = False
        self._disconnect_in_progress = False
        self._status = VPNStatus.DISCONNECTED
        self._subscribers: List[StatusCallback] = []

        logger.info("VPNManager initialization:")
        logger.info(f"  Binary directory: {self.options.binary_dir}")
        logger.info(f"  Adapter name: {self.options.adapter_name}")
        logger.info(f"  Config directory: {self.config_dir}")

    @property
    def stage_flags(self) -> StageFlags:
        return self.tunnel.flags

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """
        Register a callback for every status transition.

        Returns:
            Callable that removes the callback again
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _set_status(self, status: VPNStatus) -> None:
        self._status = status
        logger.info(f"VPN status: {status.value}")
        if not self._subscribers:
            logger.debug(f"No subscribers for status {status.value}")
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Status subscriber failed: {e}")

    def get_status(self) -> VPNStatus:
        return self._status

    def check_has_saved_credential_token(self) -> bool:
        token_file = self.options.device_token_file
        if token_file is None:
            return False
        try:
            return bool(Path(token_file).read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Could not read device token: {e}")
            return False

    def _validate_credentials(self, credentials: Union[Credentials, Mapping]) -> Credentials:
        if isinstance(credentials, Mapping):
            credentials = Credentials(
                protocol=credentials.get("protocol"),
                payload=credentials.get("payload"),
                uid=credentials.get("uid"),
            )
        if credentials is None or not credentials.protocol:
            raise ValidationError("protocol is required")
        self.builder.ensure_supported(credentials.protocol)
        if not credentials.payload:
            raise ValidationError("payload is required")
        if not credentials.uid:
            raise ValidationError("uid is required")
        return credentials

    async def connect(self, credentials: Union[Credentials, Mapping]) -> bool:
        """
        Establish the tunnel for the given server credentials.

        Args:
            credentials: Credentials or a mapping with protocol, payload and uid

        Returns:
            bool: True when connected; any failure is raised after full rollback
        """
        if self._connected:
            raise ConcurrencyError("vpn already connected")
        if self._connect_in_progress:
            raise ConcurrencyError("vpn connection state is connecting")
        if self._disconnect_in_progress:
            raise ConcurrencyError("vpn connection state is currently disconnecting")

        credentials = self._validate_credentials(credentials)
        descriptor = self.builder.extract(credentials)
        if descriptor is None:
            raise MalformedDescriptorError("Connection descriptor could not be decoded")

        self.protocol = credentials.protocol
        self._connect_in_progress = True
        self._set_status(VPNStatus.CONNECTING)
        logger.info(f"VPN connection to {descriptor.endpoint}:{descriptor.port} started")

        # The supervisor rolls back its own stages; only manager state is reset here
        try:
            await self.tunnel.connect(descriptor)
        except BaseException as e:
            self._connected = False
            self._connect_in_progress = False
            logger.error(f"VPN connection failed: {str(e) or type(e).__name__}")
            self._set_status(VPNStatus.DISCONNECTED)
            raise

        logger.info("VPN connection established")
        self._connected = True
        self._connect_in_progress = False
        self._set_status(VPNStatus.CONNECTED)
        return True

    async def disconnect(self) -> bool:
        """
        Tear the tunnel down.

        Returns:
            bool: True if every teardown step succeeded, False if some failed
                or another operation is in flight
        """
        if self._disconnect_in_progress:
            logger.info("vpn already disconnecting")
            return False
        if self._connect_in_progress:
            logger.info("vpn is connecting")
            return False

        if not self.protocol:
            self._set_status(VPNStatus.DISCONNECTED)
            return True

        self._disconnect_in_progress = True
        self._set_status(VPNStatus.DISCONNECTING)

        success = False
        try:
            success = await self.tunnel.disconnect()
        except Exception as e:
            logger.error(f"Unexpected error while disconnecting: {e}")
        finally:
            self._connected = False
            self._disconnect_in_progress = False
            self._set_status(VPNStatus.DISCONNECTED)

        logger.info("VPN disconnected")
        return success

    def cleanup(self) -> None:
        """Remove the config directory in a detached process."""
        if not self.config_dir.exists():
            return
        if sys.platform == "win32":
            cmd = WindowsCommandFactory.remove_directory(self.config_dir)
        else:
            cmd = PosixCommandFactory.remove_directory(self.config_dir)
        try:
            spawn_detached(cmd)
        except OSError as e:
            logger.error(f"Failed to remove config directory {self.config_dir}: {e}")
