"""Error taxonomy for the relay.

Only AlreadyRunningError and StartupError ever reach the caller of start().
The rest are raised and handled inside the session: logged, and the unit
they happened in ends.
"""


class ProxyError(Exception):
    """Base class for everything the proxy raises."""


class AlreadyRunningError(ProxyError):
    """start() was called while a session is active."""

    def __init__(self, message: str = "Proxy is already running"):
        super().__init__(message)


class StartupError(ProxyError):
    """The listening socket could not be bound."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class TargetConnectError(ProxyError):
    """The outbound connection to the target could not be opened."""

    def __init__(self, port: int, cause: BaseException | None = None):
        super().__init__(f"Could not connect to target port {port}: {cause}")
        self.port = port
        self.cause = cause


class StreamFault(ProxyError):
    """Read or write failure on an established connection.

    Treated as an ordinary disconnect, never surfaced as a user-facing error.
    """


class AcceptError(ProxyError):
    """A single accept on the listening socket failed.

    Logged as an error; the accept loop keeps going.
    """

    def __init__(self, cause: BaseException | None = None):
        super().__init__(f"Error accepting client: {cause}")
        self.cause = cause
