"""Document question answering core: exactly-once ingestion and grounded streaming answers."""

__version__ = "0.1.0"
