"""
Typed errors raised by the repository layer.

The request layer maps them onto responses: NotFound to 404, the conflict
kinds to 409 and InvalidTransition to 400.
"""


class MortuaryError(Exception):
    pass


class NotFound(MortuaryError):
    pass


class DuplicateRecord(MortuaryError):
    pass


class AlreadyAssigned(MortuaryError):
    pass


class AlreadyReleased(MortuaryError):
    pass


class UnitUnavailable(MortuaryError):
    pass


class InvalidTransition(MortuaryError):
    pass


class StorageError(MortuaryError):
    """The database kept failing after the unit of work was retried."""
