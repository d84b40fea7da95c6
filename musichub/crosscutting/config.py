import os
import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Mapping
from pathlib import Path

from dotenv import dotenv_values


DEFAULT_CATALOG_URL = 'https://api.odzre.my.id/api/index'
DEFAULT_COVER_URL = 'https://cdn.odzre.my.id/77c.jpg'


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the client core."""

    catalog_url: str = DEFAULT_CATALOG_URL
    supabase_url: str = ''
    supabase_anon_key: str = ''
    search_min_chars: int = 3
    search_debounce_ms: int = 300
    http_timeout_sec: float = 15.0
    signup_cooldown_sec: int = 30
    default_cover_url: str = DEFAULT_COVER_URL
    oauth_redirect_url: Optional[str] = None
    config_dir: Path = field(default_factory=lambda: Path.home() / '.musichub')
    log_level: str = 'INFO'

    def require_supabase(self) -> None:
        """Fail fast when the identity/persistence backend is not configured."""
        if not self.supabase_url:
            raise ConfigError("MUSICHUB_SUPABASE_URL not found in environment")
        if not self.supabase_anon_key:
            raise ConfigError("MUSICHUB_SUPABASE_ANON_KEY not found in environment")

    def summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'catalog_url': self.catalog_url,
            'supabase_url': self.supabase_url,
            'has_supabase_anon_key': bool(self.supabase_anon_key),
            'search_min_chars': self.search_min_chars,
            'search_debounce_ms': self.search_debounce_ms,
            'http_timeout_sec': self.http_timeout_sec,
            'signup_cooldown_sec': self.signup_cooldown_sec,
            'config_dir': str(self.config_dir),
            'log_level': self.log_level,
        }


def _get_int(values: Mapping[str, Optional[str]], key: str, default: int, minimum: int = 0) -> int:
    raw = values.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(values: Mapping[str, Optional[str]], key: str, default: float) -> float:
    raw = values.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def load_settings(env_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from a .env file with the process environment layered on top."""
    values: Dict[str, Optional[str]] = {}
    if env_file:
        if not Path(env_file).exists():
            raise ConfigError(f"Env file {env_file} does not exist")
        values.update(dotenv_values(env_file))
    values.update(os.environ if environ is None else environ)

    config_dir = values.get('MUSICHUB_CONFIG_DIR')

    return Settings(
        catalog_url=values.get('MUSICHUB_CATALOG_URL') or DEFAULT_CATALOG_URL,
        supabase_url=(values.get('MUSICHUB_SUPABASE_URL') or '').rstrip('/'),
        supabase_anon_key=values.get('MUSICHUB_SUPABASE_ANON_KEY') or '',
        search_min_chars=_get_int(values, 'MUSICHUB_SEARCH_MIN_CHARS', 3, minimum=1),
        search_debounce_ms=_get_int(values, 'MUSICHUB_SEARCH_DEBOUNCE_MS', 300),
        http_timeout_sec=_get_float(values, 'MUSICHUB_HTTP_TIMEOUT_SEC', 15.0),
        signup_cooldown_sec=_get_int(values, 'MUSICHUB_SIGNUP_COOLDOWN_SEC', 30),
        default_cover_url=values.get('MUSICHUB_DEFAULT_COVER_URL') or DEFAULT_COVER_URL,
        oauth_redirect_url=values.get('MUSICHUB_OAUTH_REDIRECT_URL') or None,
        config_dir=Path(config_dir).expanduser() if config_dir else Path.home() / '.musichub',
        log_level=(values.get('MUSICHUB_LOG_LEVEL') or 'INFO').upper(),
    )


class SessionStore:
    """Persists identity provider tokens between runs."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.musichub'
        self.session_file = self.config_dir / 'session.json'

    def load(self) -> Dict[str, Any]:
        """Load the saved session, or {} when none was saved."""
        if not self.session_file.exists():
            return {}

        try:
            with open(self.session_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load session from {self.session_file}: {e}")

    def save(self, session: Dict[str, Any]) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.session_file, 'w') as f:
                json.dump(session, f, indent=2, ensure_ascii=False)
        except (IOError, TypeError) as e:
            raise ConfigError(f"Failed to save session to {self.session_file}: {e}")

    def clear(self) -> None:
        try:
            if self.session_file.exists():
                self.session_file.unlink()
        except OSError as e:
            raise ConfigError(f"Failed to remove session file {self.session_file}: {e}")


# Global instance, created on first use
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get global settings, loading them from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def setup_config(env_file: Optional[str] = None) -> Settings:
    """Reload global settings, optionally from a .env file."""
    global _settings
    _settings = load_settings(env_file)
    return _settings
