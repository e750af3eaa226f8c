"""
Session Manager Tests

Unit tests for the messaging session core, the store and the HTTP surface.
Browser automation is replaced by the scripted clients in ``tests.fakes``;
the store tests run against in-memory SQLite.

Running Tests:
    pip install -e .[test]
    pytest tests -v
"""
