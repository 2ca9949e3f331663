"""Shared fixtures for junkrat tests."""

import pytest

from junkrat.lib.prompts import PromptEngine


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def prompts():
    """Prompt engine loaded from the repo's prompts/ directory."""
    return PromptEngine()
