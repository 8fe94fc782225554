"""Exception types for ccdpin."""


class AffinityError(Exception):
    """Base class for affinity failures."""


class InvalidCore(AffinityError, ValueError):
    """Core list is empty or a core index is outside [0, 63]."""


class ProcessNotFound(AffinityError):
    """Process exited between observation and action."""


class PermissionDenied(AffinityError):
    """The OS refused access to the process."""


class AffinityOSError(AffinityError):
    """Any other OS failure while reading or writing affinity."""


class DanglingRuleReference(AffinityError):
    """A rule or the default selection names a core group that does not exist."""

    def __init__(self, ccd_name: str, process_name: str | None = None) -> None:
        self.ccd_name = ccd_name
        self.process_name = process_name
        target = process_name if process_name is not None else "default"
        super().__init__(f"Core group '{ccd_name}' referenced by {target} does not exist")


class StoreError(Exception):
    """Reading or writing a persisted store failed."""
