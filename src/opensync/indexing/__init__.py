"""Synchronous full-text indexing."""

from opensync.indexing.fulltext import FullTextHit, FullTextIndexer, tokenize

__all__ = ["FullTextHit", "FullTextIndexer", "tokenize"]
