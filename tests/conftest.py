import pytest


@pytest.fixture(autouse=True)
def user_dirs(tmp_path, monkeypatch):
    """Keep settings and logs out of the real user directories."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    return tmp_path
