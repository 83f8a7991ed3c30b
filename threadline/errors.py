"""Exception taxonomy for the conversation engine.

Only ``ProviderError`` is meant to escape a turn. The others are raised
close to where they happen and absorbed by the component that owns the
failure: the executor turns tool errors into error results, the registry
skips unreachable sources, and the summarizer logs and waits for the next
trigger.
"""


class ThreadlineError(Exception):
    """Base class for all engine errors."""


class ProviderError(ThreadlineError):
    """The model call itself failed. Fatal to the turn."""


class ToolDispatchError(ThreadlineError):
    """A single tool call failed."""


class NotFoundError(ToolDispatchError):
    """The model asked for a tool or skill that does not exist."""


class RegistryError(ThreadlineError):
    """A tool server or the skill source could not be reached."""


class CompactionError(ThreadlineError):
    """A summarization run failed."""


class StaleBatchError(CompactionError):
    """The batch was already compacted (or the summary moved on) before commit."""
