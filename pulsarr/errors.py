class PulsarrError(Exception):
    """Base class for errors raised by the routing core."""


class ConfigError(PulsarrError):
    pass


class ConditionError(PulsarrError, ValueError):
    """A condition tree or rule criteria does not have a valid shape."""


class StorageError(PulsarrError):
    """A read or write against the persistent store failed."""


class ApprovalNotFound(PulsarrError, LookupError):
    def __init__(self, request_id: int):
        super().__init__(f"Approval request {request_id} not found")
        self.request_id = request_id


class LookupFailed(PulsarrError):
    """A metadata lookup against Radarr/Sonarr did not return usable data."""
