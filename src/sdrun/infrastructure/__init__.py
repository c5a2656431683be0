"""Process-wide infrastructure: configuration helpers and logging."""
