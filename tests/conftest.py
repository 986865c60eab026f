import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from symbol_locator import utils  # noqa: E402

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def verbose_symbol_log(monkeypatch):
    """Exercise the diagnostic output path in every test."""
    monkeypatch.setattr(utils, "VERBOSE", True)
