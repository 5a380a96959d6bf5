"""Error taxonomy shared by adapters and the sniping engine."""


class SniperError(Exception):
    """Base error."""


class AdapterUnavailableError(SniperError):
    """Raised when a chain adapter is missing or cannot be initialized."""


class AdapterCallError(SniperError):
    """Raised when a single adapter call fails. Transient by nature."""


class AssetNotFoundError(AdapterCallError):
    """Raised when an asset or mint does not exist on chain."""


class NetworkError(AdapterCallError):
    """Raised on transport failures and call timeouts."""


class ExecutionError(SniperError):
    """Raised when a trade cannot be submitted or confirmed."""


class InsufficientAllowanceError(ExecutionError):
    """Raised when the router cannot spend the input token."""


class SlippageExceededError(ExecutionError):
    """Raised when the output would fall below the slippage bound."""


class GasPriceExceededError(ExecutionError):
    """Raised when network fees exceed the configured cap."""


class PositionNotFoundError(SniperError):
    """Raised when a position id is unknown to the position manager."""
