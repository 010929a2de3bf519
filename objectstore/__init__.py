"""S3-compatible object storage service."""

__version__ = "0.4.0"
