"""gitstate: source control state reconciliation for asset repositories."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gitstate")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .engine import EngineSettings, ReconciliationEngine  # noqa: F401
from .runner import CommandResult, ProcessRunner  # noqa: F401
from .states import FileState, FileStateRecord, LockState, RemoteState, TreeState  # noqa: F401

__all__ = [
    "CommandResult",
    "EngineSettings",
    "FileState",
    "FileStateRecord",
    "LockState",
    "ProcessRunner",
    "ReconciliationEngine",
    "RemoteState",
    "TreeState",
    "__version__",
]
