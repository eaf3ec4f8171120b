"""Connection descriptor decoding and tunnel process configuration."""

import base64
import binascii
import json
from typing import Optional

from .exceptions import UnsupportedProtocolError
from .models import Credentials, TunnelDescriptor
from ..logging_utility import logger

SUPPORTED_PROTOCOL = "V2RAY"
DESCRIPTOR_LENGTH = 7

SOCKS_PORT = 10808
HTTP_PORT = 10809

TRANSPORTS = {
    1: "tcp",
    2: "mkcp",
    3: "websocket",
    4: "http",
    5: "domainsocket",
    6: "quic",
    7: "gun",
    8: "grpc",
}


class ProtocolConfigBuilder:
    """Turns opaque server credentials into a TunnelDescriptor."""

    protocol = SUPPORTED_PROTOCOL

    def ensure_supported(self, protocol: str) -> None:
        if protocol != SUPPORTED_PROTOCOL:
            raise UnsupportedProtocolError(
                f"Unsupported VPN protocol '{protocol}', only {SUPPORTED_PROTOCOL} is supported"
            )

    def extract(self, credentials: Credentials) -> Optional[TunnelDescriptor]:
        self.ensure_supported(credentials.protocol)
        return self.decode(credentials.payload, credentials.uid)

    def decode(self, payload: str, uid: str) -> Optional[TunnelDescriptor]:
        """
        Decode a base64 connection descriptor.

        Layout: four IPv4 octets, a big-endian port and one transport code.

        Args:
            payload: Base64 text or ASCII bytes, padding optional
            uid: User id placed into the outbound

        Returns:
            TunnelDescriptor, or None if the payload is not a descriptor
        """
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = bytes(payload).decode("ascii")
            text = payload.strip()
            raw = base64.b64decode(text + "=" * (-len(text) % 4))
        except (binascii.Error, ValueError, TypeError, AttributeError):
            logger.warning("Connection descriptor is not valid base64")
            return None

        if len(raw) != DESCRIPTOR_LENGTH:
            logger.warning(f"Connection descriptor has {len(raw)} bytes, expected {DESCRIPTOR_LENGTH}")
            return None

        address = ".".join(str(octet) for octet in raw[0:4])
        port = int.from_bytes(raw[4:6], "big")
        transport = TRANSPORTS.get(raw[6], "")

        return TunnelDescriptor(
            config=self.render(address, port, uid, transport),
            endpoint=address,
            port=port,
            uid=uid,
            transport=transport,
            socks_port=SOCKS_PORT,
        )

    def render(self, address: str, port: int, uid: str, transport: str) -> str:
        stream_settings = {
            "network": transport or "tcp",
            "sockopt": {
                "mark": 0,
                "tcpFastOpen": False,
                "tproxy": "off",
            },
        }
        if transport in ("grpc", "gun"):
            stream_settings["grpcSettings"] = {
                "serviceName": "",
                "multiMode": False,
            }

        config = {
            "dns": {
                "hosts": {"domain:googleapis.cn": "googleapis.com"},
                "servers": ["1.1.1.1", "1.0.0.1", "8.8.8.8"],
            },
            "inbounds": [
                {
                    "listen": "127.0.0.1",
                    "port": SOCKS_PORT,
                    "protocol": "socks",
                    "settings": {"auth": "noauth", "udp": True, "userLevel": 8},
                    "sniffing": {
                        "destOverride": ["http", "tls", "quic"],
                        "metadataOnly": False,
                        "routeOnly": False,
                        "enabled": True,
                    },
                    "tag": "socks",
                },
                {
                    "listen": "127.0.0.1",
                    "port": HTTP_PORT,
                    "protocol": "http",
                    "settings": {"userLevel": 8, "allowTransparent": False},
                    "tag": "http",
                },
            ],
            "log": {"loglevel": "warning"},
            "outbounds": [
                {
                    "mux": {
                        "concurrency": 8,
                        "enabled": True,
                        "xudpConcurrency": 16,
                        "xudpProxyUDP443": "reject",
                    },
                    "protocol": "vmess",
                    "settings": {
                        "vnext": [
                            {
                                "address": address,
                                "port": port,
                                "users": [
                                    {
                                        "alterId": 0,
                                        "encryption": "",
                                        "flow": "",
                                        "id": uid,
                                        "level": 8,
                                        "security": "auto",
                                    }
                                ],
                            }
                        ]
                    },
                    "streamSettings": stream_settings,
                    "tag": "proxy",
                },
                {
                    "protocol": "freedom",
                    "settings": {"domainStrategy": "UseIPv4"},
                    "tag": "direct",
                },
                {
                    "protocol": "blackhole",
                    "settings": {"response": {"type": "http"}},
                    "tag": "block",
                },
            ],
            "routing": {
                "domainStrategy": "AsIs",
                "rules": [
                    {"type": "field", "domain": ["geosite:private"], "outboundTag": "direct"},
                    {"type": "field", "ip": ["geoip:private"], "outboundTag": "direct"},
                    {"type": "field", "inboundTag": ["socks", "http"], "outboundTag": "proxy"},
                ],
            },
            "policy": {
                "levels": {
                    "8": {
                        "connIdle": 300,
                        "downlinkOnly": 1,
                        "handshake": 4,
                        "uplinkOnly": 1,
                    }
                },
                "system": {
                    "statsOutboundUplink": True,
                    "statsOutboundDownlink": True,
                },
            },
        }
        return json.dumps(config, indent=2)
