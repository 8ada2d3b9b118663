"""
Tests Package

Test structure:
- tests/unit/ - Fast, isolated tests (SQLite in a temp dir, in-memory channel)
- tests/factories.py - Change-event and message builders
- tests/conftest.py - Shared pytest fixtures
"""
