from ._version import __version__
from .client import FetchClient, StatadepsError, StatadepsHTTPError
from .config import Config, Environment, load_config
from .installer import BatchResult, Installer, InstallError, InstallResult
from .manifest import ManifestFormatError, ensure_exists, list_entries, upsert
from .versions import UNKNOWN_VERSION, RegexVersionExtractor, extract_version

__all__ = [
    "__version__",
    "BatchResult",
    "Config",
    "Environment",
    "FetchClient",
    "InstallError",
    "InstallResult",
    "Installer",
    "ManifestFormatError",
    "RegexVersionExtractor",
    "StatadepsError",
    "StatadepsHTTPError",
    "UNKNOWN_VERSION",
    "ensure_exists",
    "extract_version",
    "list_entries",
    "load_config",
    "upsert",
]
