"""Manager options loaded from an INI file."""

import configparser
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .logging_utility import logger

DEFAULT_CONFIG_FILE = "config/tunnelctl.conf"
SECTION = "vpn"


def _default_binary_dir() -> Path:
    return Path.cwd() / "resources" / "bin"


@dataclass
class ManagerOptions:
    binary_dir: Path = field(default_factory=_default_binary_dir)
    adapter_name: str = "exid_vpn"
    protocol_tag: str = "vpnq"
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    dns_index: int = 0
    command_timeout: float = 30.0
    stage_timeout: float = 60.0
    ready_timeout: float = 30.0
    device_token_file: Optional[Path] = None

    @classmethod
    def from_config_file(cls, config_file: Optional[str] = None) -> 'ManagerOptions':
        """
        Load options from the [vpn] section of an INI file.

        Args:
            config_file: Path to the file; TUNNELCTL_CONFIG or the default path when omitted

        Returns:
            ManagerOptions with defaults for every missing key
        """
        config_file = config_file or os.environ.get("TUNNELCTL_CONFIG", DEFAULT_CONFIG_FILE)
        config = configparser.ConfigParser()
        if not config.read(config_file):
            logger.warning(f"Config file {config_file} not found, using defaults")
            return cls()
        if not config.has_section(SECTION):
            return cls()

        section = config[SECTION]
        defaults = cls()
        token_file = section.get("device_token_file")
        return cls(
            binary_dir=Path(section.get("binary_dir", str(defaults.binary_dir))),
            adapter_name=section.get("adapter_name", defaults.adapter_name),
            protocol_tag=section.get("protocol_tag", defaults.protocol_tag),
            temp_dir=Path(section.get("temp_dir", str(defaults.temp_dir))),
            dns_index=section.getint("dns_index", defaults.dns_index),
            command_timeout=section.getfloat("command_timeout", defaults.command_timeout),
            stage_timeout=section.getfloat("stage_timeout", defaults.stage_timeout),
            ready_timeout=section.getfloat("ready_timeout", defaults.ready_timeout),
            device_token_file=Path(token_file) if token_file else None,
        )
