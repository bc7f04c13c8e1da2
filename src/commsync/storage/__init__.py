"""Persistence contracts and the PostgreSQL implementation."""
