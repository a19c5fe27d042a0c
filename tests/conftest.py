"""Pytest configuration for all tests."""

import logging

# Keep orchestrator logs out of test output unless a test asks for them
logging.getLogger("src.workflow").setLevel(logging.WARNING)
