"""fieldsync - import and synchronization pipeline for field-collected packages."""

__version__ = "0.1.0"
