"""
Test Suite

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures
    └── unit/               # Unit tests (in-memory store, fake clock)

To run tests:
    pytest tests/
    pytest tests/unit/
"""
