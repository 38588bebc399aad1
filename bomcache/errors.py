from enum import Enum


class ErrorKind(str, Enum):
    NETWORK = "network"
    INTEGRITY = "integrity"
    DECODE = "decode"
    CONTENTION = "contention"


class BomCacheError(Exception):
    """
    Base class for all failures raised by the cache.

    Every error carries a kind and the identifier of the resource it concerns
    (a filename, a freshness key or a table row), so the caller can decide how
    to report it without parsing the message.
    """

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str, resource: str | None = None):
        super().__init__(message)
        self.message = message
        self.resource = resource

    def __str__(self):
        if self.resource:
            return f"[{self.kind.value}] {self.resource}: {self.message}"
        return f"[{self.kind.value}] {self.message}"


class NetworkError(BomCacheError):
    kind = ErrorKind.NETWORK


class IntegrityViolation(BomCacheError):
    kind = ErrorKind.INTEGRITY


class DecodeError(BomCacheError):
    kind = ErrorKind.DECODE


class CompositionError(DecodeError):
    pass


class NoCachedDataError(DecodeError):
    pass


class ContentionError(BomCacheError):
    kind = ErrorKind.CONTENTION
