"""Content pipeline: admission, clustering, trend scoring and article synthesis."""
