"""
memstore - Pluggable Semantic Memory Store

Persists memories in a structured database (SQLite, PostgreSQL, MySQL,
MongoDB or Redis) alongside a vector index (in-memory, ChromaDB or
pgvector), and retrieves them by filter or by semantic similarity.
"""

__version__ = "1.0.0"
