"""agosync - Async Python toolkit for the AGO film processor."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agosync")
except PackageNotFoundError:
    __version__ = "0+local"
from agosync.client import AgoClient
from agosync.config import AgoConfig
from agosync.connectivity import ConnectivityManager
from agosync.exceptions import (
    AgoConfigError,
    AgoDeviceCommandError,
    AgoError,
    AgoPersistenceError,
    AgoTransportError,
    AgoWifiError,
)
from agosync.models import (
    ConnectionState,
    ConnectionStatus,
    DeviceProgram,
    Notice,
    NoticeLevel,
    Recipe,
    Step,
    UploadRecord,
    UploadResult,
)
from agosync.programs import ProgramService
from agosync.ssid import matches as ssid_matches
from agosync.state.coalescer import WriteCoalescer
from agosync.state.engine import PersistenceEngine
from agosync.store import RecipeStore, SqliteRecipeStore

__all__ = [
    "__version__",
    "AgoClient",
    "AgoConfig",
    "AgoConfigError",
    "AgoDeviceCommandError",
    "AgoError",
    "AgoPersistenceError",
    "AgoTransportError",
    "AgoWifiError",
    "ConnectionState",
    "ConnectionStatus",
    "ConnectivityManager",
    "DeviceProgram",
    "Notice",
    "NoticeLevel",
    "PersistenceEngine",
    "ProgramService",
    "Recipe",
    "RecipeStore",
    "SqliteRecipeStore",
    "Step",
    "UploadRecord",
    "UploadResult",
    "WriteCoalescer",
    "ssid_matches",
]
