import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


@pytest.fixture(autouse=True)
def _clear_rater_env():
    """Ensure settings from a developer .env do not leak into tests.
    Tests that need settings pass an explicit mapping or patch os.environ.
    """
    keys = [
        'SPOTIFY_CLIENT_ID', 'GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET',
        'SHEET_ID', 'SHEET_NAME', 'PLAYLIST_NAME', 'LASTFM_API_KEY', 'RATER_CONFIG_DIR',
    ]
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
