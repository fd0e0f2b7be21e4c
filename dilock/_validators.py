from typing import Any

from ._exceptions import ValidationError
from ._retry import RetrySettings


ADAPTER_METHODS = (
    'create_lock',
    'release_lock',
    'extend_lock',
    'is_valid_lock',
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_optional_non_negative(value: Any) -> bool:
    return value is None or (_is_int(value) and value >= 0)


def validate_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise ValidationError('key should be a string with at least one character')


def validate_owner_token(owner_token: Any) -> None:
    if not isinstance(owner_token, str) or not owner_token:
        raise ValidationError('owner_token should be a string with at least one character')


def validate_ttl(ttl: Any) -> None:
    if not _is_int(ttl) or ttl <= 0:
        raise ValidationError('ttl should be a positive integer')


def validate_retry_settings(settings: Any) -> None:
    if not isinstance(settings, RetrySettings):
        raise ValidationError('retry settings should be a RetrySettings instance')
    if not _is_optional_non_negative(settings.retry_delay):
        raise ValidationError('retry_delay should be a non-negative integer')
    if not _is_optional_non_negative(settings.retry_times):
        raise ValidationError('retry_times should be a non-negative integer')
    if not _is_optional_non_negative(settings.total_time):
        raise ValidationError('total_time should be a non-negative integer')
    if settings.retry_delay_fn is not None:
        if not callable(settings.retry_delay_fn):
            raise ValidationError('retry_delay_fn should be callable')
        if settings.retry_delay is not None:
            raise ValidationError("can't have both retry_delay_fn and retry_delay")
        return
    if settings.retry_delay is None or settings.retry_times is None:
        raise ValidationError(
            'retry_times and retry_delay should be specified if retry_delay_fn is not provided',
        )


def validate_adapter(adapter: Any) -> None:
    if adapter is None:
        raise ValidationError('adapter is required')
    missing = [m for m in ADAPTER_METHODS if not callable(getattr(adapter, m, None))]
    if missing:
        raise ValidationError(f'adapter is invalid, missing: {", ".join(missing)}')
