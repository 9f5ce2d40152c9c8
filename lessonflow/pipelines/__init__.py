"""Background pipelines."""
