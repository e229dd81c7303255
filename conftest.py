"""Root-level conftest.py: keep every test away from a real .issuepilot directory.

config.get_issuepilot_dir() walks up to the enclosing git checkout. Pointing
ISSUEPILOT_DIR at a temporary directory means no test can read the
developer's config.yaml or write into their lease database.
"""

import pytest


@pytest.fixture(autouse=True)
def isolated_issuepilot_dir(tmp_path, monkeypatch):
    state_dir = tmp_path / ".issuepilot"
    state_dir.mkdir()
    monkeypatch.setenv("ISSUEPILOT_DIR", str(state_dir))
    for var in ("GITHUB_REPO", "GROOMING_LABEL", "ISSUE_LABEL"):
        monkeypatch.delenv(var, raising=False)
    yield state_dir
