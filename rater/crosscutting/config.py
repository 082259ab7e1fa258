import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Mapping, Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Configuration error."""
    pass


SPOTIFY_AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
GOOGLE_AUTHORIZE_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'

REQUIRED_KEYS = (
    'SPOTIFY_CLIENT_ID',
    'GOOGLE_CLIENT_ID',
    'SHEET_ID',
    'PLAYLIST_NAME',
)


def get_spotify_scopes() -> List[str]:
    """Spotify scopes needed to read the queue playlist and drive playback."""
    return [
        'playlist-read-private',
        'playlist-modify-private',
        'playlist-modify-public',
        'user-read-playback-state',
        'user-read-currently-playing',
        'user-modify-playback-state',
    ]


def get_google_scopes() -> List[str]:
    return ['https://www.googleapis.com/auth/spreadsheets']


@dataclass
class Settings:
    """Application settings read from the environment (and .env)."""

    spotify_client_id: str = ''
    spotify_redirect_uri: str = 'http://127.0.0.1:3000/callback'
    google_client_id: str = ''
    google_client_secret: Optional[str] = None
    google_redirect_uri: str = 'http://127.0.0.1:3000/google/callback'
    sheet_id: str = ''
    sheet_name: str = 'Sheet1'
    playlist_name: str = ''
    lastfm_api_key: Optional[str] = None
    config_dir: Path = field(default_factory=lambda: Path.home() / '.rater')
    poll_interval: float = 1.0
    settle_seconds: float = 3.0
    refresh_threshold: float = 300.0
    refresh_check_interval: float = 60.0
    interactive_timeout: float = 300.0
    http_host: str = '127.0.0.1'
    http_port: int = 3000

    @property
    def tokens_file(self) -> Path:
        return self.config_dir / 'tokens.json'

    @property
    def spotify_scope_string(self) -> str:
        return ' '.join(get_spotify_scopes())

    @property
    def google_scope_string(self) -> str:
        return ' '.join(get_google_scopes())

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Build settings from a mapping (defaults to os.environ)."""
        env = os.environ if env is None else env

        def _float(key: str, default: float) -> float:
            raw = env.get(key)
            if raw is None or not str(raw).strip():
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigError(f"{key} must be a number, got {raw!r}")

        config_dir = env.get('RATER_CONFIG_DIR')
        return cls(
            spotify_client_id=env.get('SPOTIFY_CLIENT_ID', ''),
            spotify_redirect_uri=env.get('SPOTIFY_REDIRECT_URI') or cls.spotify_redirect_uri,
            google_client_id=env.get('GOOGLE_CLIENT_ID', ''),
            google_client_secret=env.get('GOOGLE_CLIENT_SECRET') or None,
            google_redirect_uri=env.get('GOOGLE_REDIRECT_URI') or cls.google_redirect_uri,
            sheet_id=env.get('SHEET_ID', ''),
            sheet_name=env.get('SHEET_NAME') or 'Sheet1',
            playlist_name=env.get('PLAYLIST_NAME', ''),
            lastfm_api_key=env.get('LASTFM_API_KEY') or None,
            config_dir=Path(config_dir) if config_dir else Path.home() / '.rater',
            poll_interval=_float('RATER_POLL_INTERVAL', 1.0),
            settle_seconds=_float('RATER_SETTLE_SECONDS', 3.0),
            http_host=env.get('RATER_HTTP_HOST') or '127.0.0.1',
            http_port=int(_float('RATER_HTTP_PORT', 3000)),
        )

    def validate(self) -> Dict[str, bool]:
        """Report which required settings are present."""
        values = {
            'SPOTIFY_CLIENT_ID': self.spotify_client_id,
            'GOOGLE_CLIENT_ID': self.google_client_id,
            'SHEET_ID': self.sheet_id,
            'PLAYLIST_NAME': self.playlist_name,
        }
        return {key: bool(values[key]) for key in REQUIRED_KEYS}

    def require(self) -> 'Settings':
        """Raise ConfigError naming every missing required setting."""
        missing = [key for key, present in self.validate().items() if not present]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")
        return self

    def summary(self) -> Dict[str, Any]:
        """Configuration summary without secrets."""
        return {
            'config_dir': str(self.config_dir),
            'tokens_file': str(self.tokens_file),
            'sheet_name': self.sheet_name,
            'playlist_name': self.playlist_name,
            'has_lastfm_key': bool(self.lastfm_api_key),
            'validation': self.validate(),
            'spotify_scopes': get_spotify_scopes(),
        }


# Global instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings, loading .env and the environment on first use."""
    global _settings
    if _settings is None:
        load_dotenv()
        _settings = Settings.from_env()
    return _settings


def setup_config(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Replace the global settings, e.g. from a custom mapping in tests."""
    global _settings
    _settings = Settings.from_env(env)
    return _settings
