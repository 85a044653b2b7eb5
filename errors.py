"""Error taxonomy shared by the matching core and the HTTP layer."""


class CommutePoolError(Exception):
    pass


class InputError(CommutePoolError):
    """Rejected before any side effect (bad date, unknown id, bad coordinates)."""


class NotFound(InputError):
    pass


class AuthorizationError(CommutePoolError):
    pass


class TransientError(CommutePoolError):
    """Failure scoped to one opt-in or one grouping; safe to retry later."""


class ScorerError(TransientError):
    pass


class LocationResolutionError(TransientError):
    pass


class CommitConflict(TransientError):
    """Another writer claimed one of the opt-ins first."""


class StorageWriteError(TransientError):
    pass


class StorageUnavailable(CommutePoolError):
    """Storage could not be read at all; aborts the whole run."""
