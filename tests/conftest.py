"""Root test configuration — asyncio auto-mode is enabled in pyproject.toml."""

import pytest

import renderlab.rate_limiting


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset the rate limiter state before each test to prevent cross-test contamination."""
    renderlab.rate_limiting.inference_rate_limit_configuration.configure("1000/minute")
    renderlab.rate_limiting.rate_limiter.reset()
