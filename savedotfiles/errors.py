"""
Custom exception hierarchy for SaveDotFiles.
"""

class SaveDotFilesError(Exception):
    """Base exception for all savedotfiles errors."""
    pass

class ConfigurationError(SaveDotFilesError):
    """Invalid codec, level, item spec or settings. Raised before any filesystem mutation."""
    pass

class ItemError(SaveDotFilesError):
    """A single item could not be copied. Recorded in the manifest, never raised out of a backup."""
    pass

class PackagingError(SaveDotFilesError):
    """The archive container could not be written."""
    pass

class PathTraversalError(PackagingError):
    pass

class PublishError(SaveDotFilesError):
    """Clone, commit or push against the remote store failed."""
    pass

class ScheduleStoreError(SaveDotFilesError):
    """A job store could not be read or written."""
    pass
