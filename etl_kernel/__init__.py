"""
ETL Kernel - shared infrastructure for the chunk-oriented batch engine.

Provides:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with run-scoped context
- Injectable clock
- SQLAlchemy declarative base and engine/session helpers
"""

__version__ = "0.1.0"
