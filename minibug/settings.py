"""Settings resolution with 5-step precedence chain and named profile support."""

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

import tomlkit
import typer
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_PATH = Path.home() / ".config" / "minibug" / "config.toml"


class MinibugSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MINIBUG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Profile selection
    default_profile: str | None = None
    provider: str = "memory"  # "memory" | "firestore", resolved from active profile

    # Identity: a fixed user id, or anonymous Firebase sign-in when unset
    user_id: str | None = None

    # Firestore
    firebase_api_key: SecretStr | None = None
    firebase_project_id: str | None = None
    collection: str = "issues"
    poll_interval: float = 2.0  # seconds between runQuery polls

    # Logging
    log_level: str = "WARNING"
    log_json: bool = False


@lru_cache(maxsize=1)
def _load_toml() -> tomlkit.TOMLDocument:
    """Load ~/.config/minibug/config.toml, returning empty document if missing."""
    if not CONFIG_PATH.exists():
        return tomlkit.document()
    return tomlkit.load(CONFIG_PATH.open())


def _list_profiles(config: Mapping) -> list[str]:
    # tomlkit Table implements MutableMapping but not dict, so check Mapping
    return [k for k, v in config.items() if isinstance(v, Mapping)]


def _cwd_env_provider() -> str | None:
    """Read MINIBUG_PROVIDER from .env in cwd without full settings instantiation."""
    env_file = Path(".env")
    if not env_file.exists():
        return None
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line.startswith("MINIBUG_PROVIDER="):
            return line.split("=", 1)[1].strip().strip("\"'")
    return None


def get_settings(profile: str | None = None) -> MinibugSettings:
    """Resolve the active profile and return a fully populated MinibugSettings.

    Precedence (highest to lowest):
    1. profile argument (--profile CLI flag)
    2. MINIBUG_DEFAULT_PROFILE env var
    3. default_profile key in ~/.config/minibug/config.toml
    4. MINIBUG_PROVIDER in .env in cwd
    5. First profile defined in ~/.config/minibug/config.toml
    """
    toml_config = _load_toml()

    active = (
        profile
        or os.environ.get("MINIBUG_DEFAULT_PROFILE")
        or toml_config.get("default_profile")
        or _cwd_env_provider()
        or ((_profiles := _list_profiles(toml_config)) and _profiles[0] or None)
    )

    profile_defaults: dict = {}
    if active:
        if active in toml_config and isinstance(toml_config[active], Mapping):
            profile_defaults = dict(toml_config[active])
        elif active not in toml_config and active not in ("memory", "firestore"):
            # A bare provider name from .env is not a profile; anything else is a typo.
            profiles = _list_profiles(toml_config)
            typer.echo(f"Profile '{active}' not found in {CONFIG_PATH}. Available: {profiles or '(none)'}")
            raise typer.Exit(1)

    # env vars + .env always override profile defaults
    settings = MinibugSettings(**profile_defaults)

    if settings.provider == "firestore":
        if not settings.firebase_project_id:
            typer.echo(
                "Missing Firestore project. Set MINIBUG_FIREBASE_PROJECT_ID or "
                f"firebase_project_id in the [{active or 'profile'}] section of {CONFIG_PATH}"
            )
            raise typer.Exit(1)
        if not settings.firebase_api_key and not settings.user_id:
            typer.echo(
                "Missing Firebase credentials. Set MINIBUG_FIREBASE_API_KEY or "
                f"firebase_api_key in the [{active or 'profile'}] section of {CONFIG_PATH} "
                "(or configure a fixed user_id)"
            )
            raise typer.Exit(1)

    return settings
