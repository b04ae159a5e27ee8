"""Function pipelines, store-and-forward retries, REST handlers and AEAD encryption for edge application services."""

__version__ = "0.1.0"