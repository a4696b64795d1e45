"""
Error taxonomy of the dispatch core.

Every precondition violation is classified inside the engine as one of the
``DispatchError`` subclasses below.  ``StoreError`` is the only exception
the persistence layer is allowed to raise; the engine turns it into an
``InternalError`` so store detail never reaches the caller.

``status_code`` is read by the API boundary only.
"""


class DispatchError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(DispatchError):
    kind = "invalid_state"
    status_code = 400


class ConflictError(DispatchError):
    kind = "conflict"
    status_code = 409


class ForbiddenError(DispatchError):
    kind = "forbidden"
    status_code = 403


class ServiceUnavailableError(DispatchError):
    kind = "service_unavailable"
    status_code = 503


class InternalError(DispatchError):
    kind = "internal"
    status_code = 500


class StoreError(Exception):
    """Raised by store implementations on infrastructure failure."""
