class SyncError(Exception):
    """
    Base class for errors raised by the sync service.
    """


class ConfigurationError(SyncError):
    """
    Raised when the cluster configuration exists but cannot be loaded.
    """


class ClientError(SyncError):
    """
    Raised when a cluster client cannot be constructed from a loaded configuration.
    """


class WatchError(SyncError):
    """
    Raised when an established service watch breaks or ends.
    """


class WatchOpenError(SyncError):
    """
    Raised when a service watch cannot be opened for a reason other than a timeout.
    """
