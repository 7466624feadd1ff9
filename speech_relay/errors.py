"""
Error taxonomy for the relay

Session-side errors come from the recognition backend, client-side errors
from the WebSocket transport. Both are handled inside the relay controller.
"""


class RelayError(Exception):
    """Base class for relay errors"""


class BackendUnavailable(RelayError):
    """The streaming RPC to the backend could not be established"""


class ConfigRejected(RelayError):
    """The backend refused the initial recognition configuration"""


class StreamClosed(RelayError):
    """The recognition stream no longer accepts audio"""


class ConnectionClosed(RelayError):
    """The client transport is gone"""


class SendFailed(RelayError):
    """A transcript could not be written to the client"""


class MalformedCommand(RelayError, ValueError):
    """A control frame is not a well-formed command"""


class UnknownCommand(MalformedCommand):
    """A well-formed control frame names a command type we do not handle"""

    def __init__(self, command_type):
        super().__init__(f"Unknown command type: {command_type!r}")
        self.command_type = command_type
