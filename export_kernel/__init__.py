"""
Export Kernel -- shared infrastructure for the expense export pipeline.

- Typed, coded exceptions
- Structured JSON logging with request-scoped context
- SQLAlchemy base classes, engine and money types
- Injectable clock and locked-counter sequences
- Deterministic hashing for keys and the audit chain
"""

__version__ = "0.1.0"
