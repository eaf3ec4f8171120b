"""Custom exceptions for tunnel management."""


class VPNError(Exception):
    """Base exception for VPN-related errors."""

    def __init__(self, message: str = "", stage=None):
        super().__init__(message)
        self.stage = stage


class ValidationError(VPNError):
    """Raised when credentials or arguments are missing or invalid"""
    pass


class UnsupportedProtocolError(ValidationError):
    """Raised when credentials name a protocol other than the supported one"""
    pass


class MalformedDescriptorError(ValidationError):
    """Raised when the connection descriptor cannot be decoded"""
    pass


class ConcurrencyError(VPNError):
    """Raised when connect is requested while another operation is in flight"""
    pass


class CommandError(VPNError):
    """Raised when an OS command exits with an error"""

    def __init__(self, message: str = "", returncode=None, stderr: str = "", stage=None):
        super().__init__(message, stage=stage)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """Raised when an OS command does not finish in time"""
    pass


class ProcessError(VPNError):
    """Raised when a managed process fails to start or dies before it is ready"""
    pass


class ReadinessTimeoutError(ProcessError):
    """Raised when a managed process never prints its readiness marker"""
    pass


class ResolutionError(VPNError):
    """Raised when a gateway, interface or endpoint cannot be resolved"""
    pass


class AdapterNotFoundError(ResolutionError):
    """Raised when the tunnel adapter does not exist"""
    pass


class ConnectivityError(VPNError):
    """Raised when no traffic passes through the tunnel"""
    pass


class StageError(VPNError):
    """Raised when a connect stage fails with a non-VPN error"""
    pass


class StageTimeoutError(StageError):
    """Raised when a connect or teardown stage exceeds its time budget"""
    pass
