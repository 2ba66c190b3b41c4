"""convindex: import chat transcripts and index them for semantic search."""

__version__ = "0.1.0"
