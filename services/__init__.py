# services package
from .errors import (
    MortuaryError,
    NotFound,
    DuplicateRecord,
    AlreadyAssigned,
    AlreadyReleased,
    UnitUnavailable,
    InvalidTransition,
    StorageError,
)

__all__ = [
    'MortuaryError',
    'NotFound',
    'DuplicateRecord',
    'AlreadyAssigned',
    'AlreadyReleased',
    'UnitUnavailable',
    'InvalidTransition',
    'StorageError',
]
