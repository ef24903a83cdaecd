"""Configuration management for marketplace messaging."""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any

from ..api.models import AlertCue

logger = logging.getLogger(__name__)

APP_ID = "marketplace-messaging"
CONFIG_DIR = Path.home() / ".config" / "marketplace-messaging"
DEFAULT_ATTACHMENT_BUCKET = "chat-attachments"


def _keyring_available() -> bool:
    """Check if a working keyring backend is available."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        backend = keyring.get_keyring()
        return not isinstance(backend, FailKeyring)
    except Exception:
        return False


class Config:
    """Manages application configuration with secure credential storage."""

    def __init__(self, config_dir: Path | None = None, use_keyring: bool | None = None) -> None:
        self.config_dir = config_dir or CONFIG_DIR
        self.config_file = self.config_dir / "config.json"
        self.secrets_file = self.config_dir / "secrets.json"  # Fallback when keyring unavailable
        self._config: dict[str, Any] = {}
        self._secrets: dict[str, str] = {}
        self._use_keyring = _keyring_available() if use_keyring is None else use_keyring
        self._load()

    def _load(self) -> None:
        """Load configuration from disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        if self.config_file.exists():
            try:
                self._config = json.loads(self.config_file.read_text())
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable config file %s", self.config_file)
                self._config = {}
        else:
            self._config = {}

        if not self._use_keyring and self.secrets_file.exists():
            try:
                self._secrets = json.loads(self.secrets_file.read_text())
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable secrets file %s", self.secrets_file)
                self._secrets = {}

    def _save(self) -> None:
        """Save configuration to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(self._config, indent=2))

    def _save_secrets(self) -> None:
        """Save secrets to fallback file (when keyring unavailable)."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.secrets_file.write_text(json.dumps(self._secrets, indent=2))
        os.chmod(self.secrets_file, 0o600)

    # Secrets

    def _get_secret(self, name: str) -> str | None:
        if self._use_keyring:
            import keyring

            return keyring.get_password(APP_ID, name)
        # Fallback: base64 encoded in local file (not truly secure, but better than plaintext)
        encoded = self._secrets.get(name)
        if encoded:
            try:
                return base64.b64decode(encoded).decode("utf-8")
            except ValueError:
                return None
        return None

    def _set_secret(self, name: str, value: str) -> None:
        if self._use_keyring:
            import keyring

            keyring.set_password(APP_ID, name, value)
        else:
            self._secrets[name] = base64.b64encode(value.encode("utf-8")).decode("ascii")
            self._save_secrets()

    def _delete_secret(self, name: str) -> None:
        if self._use_keyring:
            import keyring

            try:
                keyring.delete_password(APP_ID, name)
            except keyring.errors.PasswordDeleteError:
                pass
        else:
            self._secrets.pop(name, None)
            self._save_secrets()

    @property
    def api_key(self) -> str | None:
        """Public API key of the hosted project."""
        return self._get_secret("api_key")

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._set_secret("api_key", value)

    @property
    def refresh_token(self) -> str | None:
        """Refresh token of the last signed-in session."""
        return self._get_secret("refresh_token")

    @refresh_token.setter
    def refresh_token(self, value: str) -> None:
        self._set_secret("refresh_token", value)

    def delete_refresh_token(self) -> None:
        """Forget the stored session."""
        self._delete_secret("refresh_token")

    # Settings

    @property
    def server_url(self) -> str | None:
        """Base URL of the hosted project."""
        return self._config.get("server_url")

    @server_url.setter
    def server_url(self, value: str) -> None:
        self._config["server_url"] = value.rstrip("/")
        self._save()

    @property
    def realtime_url(self) -> str | None:
        """Realtime endpoint; defaults to the server URL."""
        return self._config.get("realtime_url") or self.server_url

    @realtime_url.setter
    def realtime_url(self, value: str) -> None:
        self._config["realtime_url"] = value.rstrip("/")
        self._save()

    @property
    def attachment_bucket(self) -> str:
        return self._config.get("attachment_bucket") or DEFAULT_ATTACHMENT_BUCKET

    @property
    def alert_cue(self) -> AlertCue:
        """Cue played with new-notification alerts."""
        try:
            return AlertCue(self._config.get("alert_cue", AlertCue.SOUND.value))
        except ValueError:
            return AlertCue.NONE

    @property
    def is_configured(self) -> bool:
        """Check if the app has been configured with server details."""
        return bool(self.server_url and self.api_key)

    @property
    def using_secure_storage(self) -> bool:
        """Check if we're using secure keyring storage."""
        return self._use_keyring

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value."""
        self._config[key] = value
        self._save()
