# src/gatehouse/db/__init__.py
"""Database configuration and utilities."""

from .session import create_tables, get_sessionmaker

__all__ = ["create_tables", "get_sessionmaker"]
