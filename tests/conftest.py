import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from devreload.watch import WatchRule  # noqa: E402


@pytest.fixture
def site(tmp_path):
    """A small site directory with an index page and a stylesheet."""
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text("<html><head></head><body>home</body></html>")
    (root / "about.html").write_text("<html><body>about</body></html>")
    (root / "style.css").write_text("body { color: red }")
    (root / "docs").mkdir()
    (root / "docs" / "index.html").write_text("<p>docs</p></html>")
    return root


@pytest.fixture
def make_rule(tmp_path):
    """Build a WatchRule whose pattern is rooted at tmp_path."""
    def _make(pattern, command=None, silent=False):
        return WatchRule(f"{tmp_path}/{pattern}", command, silent)
    return _make
