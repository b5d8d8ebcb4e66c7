"""Exceptions raised by engine components.

Backends raise these; the command router converts them into failed
results and error events so nothing escapes to the caller.
"""


class FlashTermError(Exception):
    """Base class for engine errors."""


class SpawnError(FlashTermError):
    """The local shell interpreter could not be started."""


class BackendWriteError(FlashTermError):
    """Writing a command to a backend failed."""


class BackendClosedError(FlashTermError):
    """The backend was closed (session destroyed) while in use."""


class RemoteConnectError(FlashTermError):
    """SSH connection, authentication or shell setup failed."""
