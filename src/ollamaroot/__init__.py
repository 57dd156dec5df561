"""ollamaroot package."""

from .arch import Architecture, resolve_architecture
from .config import RuntimeConfig
from .context import AppContext
from .errors import ErrorCode, ErrorRecord
from .preflight import assert_runtime_ready, check_runtime
from .provision import create_provisioner
from .runtime_paths import get_app_dir
from .supervisor import ServerState, ServerStatus

__all__ = [
    "AppContext",
    "Architecture",
    "ErrorCode",
    "ErrorRecord",
    "RuntimeConfig",
    "ServerState",
    "ServerStatus",
    "assert_runtime_ready",
    "check_runtime",
    "create_provisioner",
    "get_app_dir",
    "resolve_architecture",
]
