"""
Global pytest configuration for the billing engine tests.
"""

import os

import pytest

# Keep tests off any database configured in the shell or a local .env
os.environ.pop("DATABASE__URL", None)
os.environ["ENVIRONMENT"] = "test"
os.environ["TESTING"] = "1"


@pytest.fixture(autouse=True)
def reset_global_settings():
    """Give each test a fresh settings singleton."""
    from cadence.platform.settings import reset_settings

    reset_settings()
    yield
    reset_settings()
