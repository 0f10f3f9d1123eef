"""
Rollup Exceptions

Errors raised by the document stores and the rollup transaction.
Skip conditions are not errors and are reported as processing outcomes.
"""

from typing import Optional


class RollupError(Exception):
    """Base class for all order rollup errors"""


class StoreUnavailable(RollupError):
    """The document store is not initialised or cannot be reached"""


class TransactionConflict(RollupError):
    """A concurrent writer committed a document this transaction read"""
    
    def __init__(self, collection: str, key: str):
        super().__init__(f"Concurrent write to {collection}/{key}")
        self.collection = collection
        self.key = key


class TransactionAborted(RollupError):
    """A transaction gave up after exhausting its attempts"""
    
    def __init__(self, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"Transaction aborted after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.cause = cause
