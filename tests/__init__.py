"""batch_taskr test suite.

This test suite is organized into two categories:

- tests/unit/: Unit tests that run in-process or with spawned helper processes
- tests/integration/: Integration tests that launch real detached workers through Qt

To run unit tests:
    pytest tests/unit/

To run integration tests:
    pytest tests/integration/
"""
