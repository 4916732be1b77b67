"""Exception hierarchy for Claude Relay."""


class RelayError(Exception):
    """Base class for all Claude Relay errors."""


class SessionError(RelayError):
    """A session operation did not complete as requested."""


class SessionSpawnError(SessionError):
    """The Claude CLI process could not be started."""


class SessionWriteError(SessionError):
    """A message could not be written to the Claude CLI stdin."""


class SessionBusyError(SessionError):
    """A turn is already in flight for this session."""


class SessionNotFoundError(SessionError):
    """No session is registered for the conversation."""
