"""
qgrep-indexer - per-workspace code search backed by the qgrep engine.

Drives the external qgrep binary to build and incrementally maintain one
text-search index per workspace root, and exposes regex text search and
multi-mode file search across those indexes.
"""

__version__ = "0.4.0"
