"""Distributed locks on top of Redis, MongoDB, Google Cloud Storage or memory.
"""
from ._adapter import LockAdapter
from ._exceptions import (
    AdapterError,
    AlreadyAcquiredError,
    AlreadyReleasedError,
    CreateFailedError,
    DilockError,
    ExtendFailedError,
    LockError,
    NotAcquiredError,
    ReleaseFailedError,
    RetryExhaustedError,
    ValidationError,
)
from ._gcs import GCSAdapter
from ._lock import Lock, LockState
from ._locker import Locker
from ._memory import MemoryAdapter
from ._mongo import MongoAdapter, is_duplicate_key_error
from ._redis import RedisAdapter
from ._retry import Continue, RetrySettings, RetryState, Stop, retry


__version__ = '0.1.0'
__all__ = [
    'AdapterError',
    'AlreadyAcquiredError',
    'AlreadyReleasedError',
    'Continue',
    'CreateFailedError',
    'DilockError',
    'ExtendFailedError',
    'GCSAdapter',
    'is_duplicate_key_error',
    'Lock',
    'LockAdapter',
    'LockError',
    'Locker',
    'LockState',
    'MemoryAdapter',
    'MongoAdapter',
    'NotAcquiredError',
    'RedisAdapter',
    'ReleaseFailedError',
    'retry',
    'RetryExhaustedError',
    'RetrySettings',
    'RetryState',
    'Stop',
    'ValidationError',
]
