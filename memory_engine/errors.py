"""Error taxonomy for the memory engine.

None of these escape ``MemoryStore``'s public methods; the store converts
them into ``False``/``None`` or a result object carrying ``error``.
"""


class MemoryEngineError(Exception):
    """Base class for memory engine failures."""


class InvalidIdentifier(MemoryEngineError):
    """A filename or token failed validation or resolved outside its root."""


class RecordNotFound(MemoryEngineError):
    """The target record does not exist."""


class MalformedMetadata(MemoryEngineError):
    """A metadata block is partial or invalid; treated as absent."""


class StorageUnavailable(MemoryEngineError):
    """A storage directory could not be read."""
