"""Persisted settings.

Settings live in ``~/.config/ecostream/credentials.json``.  Environment
variables override the file, so a container can run without one.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from ecostream._constants import API_BASE, CRED_FILE

ENV_VARS: dict[str, str] = {
    "access_key": "ECOFLOW_ACCESS_KEY",
    "secret_key": "ECOFLOW_SECRET_KEY",
    "email": "ECOFLOW_EMAIL",
    "password": "ECOFLOW_PASSWORD",
    "api_base": "ECOFLOW_API_URL",
}


@dataclass
class Settings:
    """Credentials and tunables for the client and the telemetry session."""

    access_key: str = ""
    secret_key: str = ""
    email: str = ""
    password: str = ""
    api_base: str = API_BASE
    max_reconnect_interval: float = 600.0
    refresh_interval: float = 300.0

    @property
    def has_api_keys(self) -> bool:
        return bool(self.access_key and self.secret_key)

    @property
    def has_login(self) -> bool:
        return bool(self.email and self.password)

    @classmethod
    def load(cls, path: Path = CRED_FILE, environ: dict[str, str] | None = None) -> Settings:
        """Load settings from *path* and the environment.

        Raises :class:`FileNotFoundError` if neither provides the API keys.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if path.exists():
            stored = json.loads(path.read_text())
            known = {f.name for f in fields(cls)}
            values.update({k: v for k, v in stored.items() if k in known})
        for name, var in ENV_VARS.items():
            if env.get(var):
                values[name] = env[var]
        settings = cls(**values)  # type: ignore[arg-type]
        if not settings.has_api_keys:
            raise FileNotFoundError(
                f"No API keys at {path} or in {ENV_VARS['access_key']}/"
                f"{ENV_VARS['secret_key']}. Run `ecostream configure` first."
            )
        return settings

    def save(self, path: Path = CRED_FILE) -> None:
        """Persist settings with owner-only permissions."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2))
        path.chmod(0o600)
