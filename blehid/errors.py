"""Domain-specific errors for blehid."""


class BleHidError(Exception):
    """Base error for blehid."""


class UnsupportedEnvironmentError(BleHidError):
    """Raised when there is no adapter, the adapter is off, or it cannot advertise."""


class StackError(BleHidError):
    """Base error for failures reported by the radio stack."""


class StackPermissionError(StackError):
    """Raised when the radio stack refuses an operation for lack of permission."""


class StackOperationError(StackError):
    """Raised when a radio stack call fails for any other reason."""


def describe_stack_error(exc: BaseException) -> str:
    """One-line description for log messages."""
    if isinstance(exc, StackPermissionError):
        return f"permission denied ({exc})"
    return str(exc) or type(exc).__name__
