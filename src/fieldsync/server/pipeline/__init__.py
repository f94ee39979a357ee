"""Import pipeline: integrity, staging, validation, detection, review and commit."""
