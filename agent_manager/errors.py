"""Exception types raised by the detection engine and its action surface."""


class AgentManagerError(Exception):
    """Base class for every error the engine raises on purpose."""


class ScanFailure(AgentManagerError):
    """The OS process query could not produce any snapshot."""


class ParseFailure(AgentManagerError):
    """A transcript file could not be parsed at all."""


class CorrelationFailure(AgentManagerError):
    """No transcript could be matched to a live process."""


class ActionFailure(AgentManagerError):
    """A kill/focus/open action did not succeed."""
