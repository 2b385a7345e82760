"""
Typed errors raised by the document processing core.
"""
from typing import Any, Optional


class ProcessingError(Exception):
    """Base exception for all document processing errors"""
    pass


class DocumentNotFoundError(ProcessingError):
    """Raised when a document id does not resolve to a stored document"""
    pass


class StageOrderError(ProcessingError):
    """Raised when a pipeline step is driven out of its allowed order"""
    pass


class StorageError(ProcessingError):
    """Raised when the object store rejects an operation"""
    pass


class StorageUnavailableError(StorageError):
    """Raised when the object store cannot be reached at all"""
    pass


class PageConversionError(ProcessingError):
    """Raised when a document produced no usable page images"""
    pass


class AIGatewayError(ProcessingError):
    """Base exception for failures talking to the AI inference backend"""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class NoResponseError(AIGatewayError):
    """The backend returned nothing at all"""
    pass


class OperationFailedError(AIGatewayError):
    """The backend answered with success=false"""

    def __init__(self, message: str, operation: Optional[str] = None,
                 name: Optional[str] = None, stack: Optional[str] = None):
        super().__init__(message, operation)
        self.name = name
        self.stack = stack


class MalformedResponseError(AIGatewayError):
    """The backend answered with a payload that does not match the contract"""

    def __init__(self, message: str, operation: Optional[str] = None, raw: Any = None):
        super().__init__(message, operation)
        self.raw = raw
