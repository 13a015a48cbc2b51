"""Common utilities and shared functionality."""

from .exceptions import (
    BinaryNotFoundError,
    CfTunnelError,
    LocalStoreCorruptError,
    NotInitializedError,
    OperationBusyError,
    OperationCancelledError,
    OperationFailed,
    OSServiceFailure,
    ProcessError,
    RegistryError,
    ValidationError,
)
from .logging import get_logger, setup_logging
from .process import AsyncProcessManager, CommandResult, find_binary, run_command
from .utils import (
    MAX_PORT,
    MIN_PORT,
    build_hostname,
    mask_sensitive_data,
    metrics_port_for,
    normalize_target,
    remote_tunnel_name,
    sanitize_log_data,
    validate_non_empty_string,
    validate_port,
)

__all__ = [
    # Processes
    "AsyncProcessManager",
    "CommandResult",
    "find_binary",
    "run_command",
    # Exceptions
    "CfTunnelError",
    "BinaryNotFoundError",
    "LocalStoreCorruptError",
    "NotInitializedError",
    "OperationBusyError",
    "OperationCancelledError",
    "OperationFailed",
    "OSServiceFailure",
    "ProcessError",
    "RegistryError",
    "ValidationError",
    # Logging
    "get_logger",
    "setup_logging",
    # Utils
    "build_hostname",
    "mask_sensitive_data",
    "metrics_port_for",
    "normalize_target",
    "remote_tunnel_name",
    "sanitize_log_data",
    "validate_non_empty_string",
    "validate_port",
    "MIN_PORT",
    "MAX_PORT",
]
