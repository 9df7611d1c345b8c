"""
Tests Package - Unit Tests

Test structure:
- tests/unit/ - Fast, isolated unit tests (fake source, bus and SFTP)
- tests/conftest.py - Shared pytest fixtures
"""
