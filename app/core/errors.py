class ReconciliationError(Exception):
    """Base class for storage failures raised while reconciling a webhook."""


class LedgerWriteError(ReconciliationError):
    pass


class ProjectionError(ReconciliationError):
    pass
