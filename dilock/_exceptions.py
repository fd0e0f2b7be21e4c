from typing import Optional


class DilockError(Exception):
    pass


class ValidationError(DilockError):
    pass


class LockError(DilockError):
    """Illegal state transition of a lock handle.
    """


class AlreadyAcquiredError(LockError):
    pass


class AlreadyReleasedError(LockError):
    pass


class NotAcquiredError(LockError):
    pass


class AdapterError(DilockError):
    """The backend refused the operation: the lock is held by someone else,
    the owner token does not match, or the record has expired.
    """


class CreateFailedError(AdapterError):
    pass


class ReleaseFailedError(AdapterError):
    pass


class ExtendFailedError(AdapterError):
    pass


class RetryExhaustedError(DilockError):
    reason: str
    last_error: Optional[BaseException]

    def __init__(self, reason: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.last_error = last_error
