from ._version import __version__
from .client import (
    ErrorKind,
    NetworkError,
    NotFoundError,
    TerminalMarketClient,
    TerminalMarketError,
    TerminalMarketHTTPError,
    ValidationError,
)
from .config import ConfigStore

__all__ = [
    "ConfigStore",
    "ErrorKind",
    "NetworkError",
    "NotFoundError",
    "TerminalMarketClient",
    "TerminalMarketError",
    "TerminalMarketHTTPError",
    "ValidationError",
    "__version__",
]
