"""
Heimdallr test suite.

Shared models live in tests.models and shared fixtures in tests/conftest.py.
"""
