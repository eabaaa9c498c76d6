"""Tests for minibug.settings: all 5 precedence steps and error paths."""

from pathlib import Path

import click
import pytest
import tomlkit

import minibug.settings as settings_module
from minibug.settings import _list_profiles, get_settings


def _write_config(tmp_path: Path, config: dict) -> Path:
    config_path = tmp_path / "config.toml"
    config_path.write_text(tomlkit.dumps(config))
    return config_path


@pytest.fixture(autouse=True)
def reset_lru_cache():
    """Clear the lru_cache before each test."""
    settings_module._load_toml.cache_clear()
    yield
    settings_module._load_toml.cache_clear()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    for name in (
        "MINIBUG_DEFAULT_PROFILE",
        "MINIBUG_PROVIDER",
        "MINIBUG_USER_ID",
        "MINIBUG_FIREBASE_API_KEY",
        "MINIBUG_FIREBASE_PROJECT_ID",
    ):
        monkeypatch.delenv(name, raising=False)
    # keep a developer's own .env out of the picture
    monkeypatch.chdir(tmp_path)


FIRESTORE_PROFILES = {
    "default_profile": "personal",
    "work": {"provider": "firestore", "firebase_project_id": "work-proj", "firebase_api_key": "key-work"},
    "personal": {"provider": "firestore", "firebase_project_id": "home-proj", "firebase_api_key": "key-home"},
}


class TestListProfiles:
    def test_returns_section_keys(self) -> None:
        assert _list_profiles(FIRESTORE_PROFILES) == ["work", "personal"]

    def test_skips_scalar_keys(self) -> None:
        config = {"default_profile": "work", "work": {"provider": "memory"}}
        assert _list_profiles(config) == ["work"]

    def test_empty_config(self) -> None:
        assert _list_profiles({}) == []


class TestGetSettings:
    def test_profile_arg_takes_precedence(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, FIRESTORE_PROFILES))
        monkeypatch.setenv("MINIBUG_DEFAULT_PROFILE", "personal")

        s = get_settings(profile="work")
        assert s.firebase_project_id == "work-proj"
        assert s.firebase_api_key is not None
        assert s.firebase_api_key.get_secret_value() == "key-work"

    def test_env_var_takes_precedence_over_toml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, FIRESTORE_PROFILES))
        monkeypatch.setenv("MINIBUG_DEFAULT_PROFILE", "work")

        assert get_settings().firebase_project_id == "work-proj"

    def test_toml_default_profile_used(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, FIRESTORE_PROFILES))

        assert get_settings().firebase_project_id == "home-proj"

    def test_cwd_env_provider_used(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"memory": {"provider": "memory", "user_id": "local-dev"}, "work": FIRESTORE_PROFILES["work"]}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))
        (tmp_path / ".env").write_text('MINIBUG_PROVIDER="memory"\n')

        s = get_settings()
        assert s.provider == "memory"
        assert s.user_id == "local-dev"

    def test_cwd_env_bare_provider_without_profile(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"work": FIRESTORE_PROFILES["work"]}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))
        (tmp_path / ".env").write_text(
            "MINIBUG_PROVIDER='firestore'\nMINIBUG_FIREBASE_PROJECT_ID=dotenv-proj\nMINIBUG_FIREBASE_API_KEY=dotenv-key\n"
        )

        s = get_settings()
        assert s.provider == "firestore"
        assert s.firebase_project_id == "dotenv-proj"

    def test_first_profile_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"work": FIRESTORE_PROFILES["work"], "personal": FIRESTORE_PROFILES["personal"]}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))

        assert get_settings().firebase_project_id == "work-proj"

    def test_env_overrides_profile_values(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, FIRESTORE_PROFILES))
        monkeypatch.setenv("MINIBUG_FIREBASE_PROJECT_ID", "override")

        assert get_settings(profile="work").firebase_project_id == "override"

    def test_missing_profile_exits(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, FIRESTORE_PROFILES))

        with pytest.raises((SystemExit, click.exceptions.Exit)):
            get_settings(profile="nonexistent")

    def test_missing_project_id_exits(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"work": {"provider": "firestore", "firebase_api_key": "key"}}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))

        with pytest.raises((SystemExit, click.exceptions.Exit)):
            get_settings(profile="work")

    def test_missing_api_key_exits(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"work": {"provider": "firestore", "firebase_project_id": "proj"}}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))

        with pytest.raises((SystemExit, click.exceptions.Exit)):
            get_settings(profile="work")

    def test_fixed_user_id_skips_api_key(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = {"work": {"provider": "firestore", "firebase_project_id": "proj", "user_id": "alice"}}
        monkeypatch.setattr(settings_module, "CONFIG_PATH", _write_config(tmp_path, config))

        s = get_settings(profile="work")
        assert s.user_id == "alice"
        assert s.firebase_api_key is None

    def test_no_config_file_returns_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", tmp_path / "nonexistent.toml")

        s = get_settings()
        assert s.provider == "memory"
        assert s.collection == "issues"
        assert s.log_level == "WARNING"

    def test_no_config_file_env_only(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings_module, "CONFIG_PATH", tmp_path / "nonexistent.toml")
        monkeypatch.setenv("MINIBUG_PROVIDER", "firestore")
        monkeypatch.setenv("MINIBUG_FIREBASE_PROJECT_ID", "env-proj")
        monkeypatch.setenv("MINIBUG_FIREBASE_API_KEY", "env-key")

        s = get_settings()
        assert s.provider == "firestore"
        assert s.firebase_project_id == "env-proj"
