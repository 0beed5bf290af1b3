"""
Tests Package - Unit and Scenario Tests

Test structure:
- tests/fakes.py - FakeAdPlatform (httpx.MockTransport) and wiring helpers
- tests/conftest.py - Shared pytest fixtures (settings, database, fake platform)
- tests/test_*.py - One module per component, plus end-to-end orchestrator runs
"""
