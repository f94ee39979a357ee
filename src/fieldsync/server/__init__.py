"""Server module - import pipeline, sync protocol and HTTP API."""
