"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from homelabctl.config import CONFIG_ENV_VAR, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.instance_root == Path("/opt/homelab/instances")
    assert config.roles_dir == config.project_root / "roles"
    assert config.backups.root == config.project_root / "backups"
    assert config.backups.prefix == "homelab-backup"
    assert config.backups.retention_days == 30
    assert config.dns.resolver == "1.1.1.1"
    assert config.dns.records == ("traefik", "portainer", "whoami")
    assert config.health.wait_attempts == 30
    assert config.editor == "nano"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "homelabctl.yml"
    cfg.write_text(
        f"project_root: {tmp_path / 'homelab'}\n"
        "instance_root: /srv/instances\n"
        "editor: vim\n"
        "backups:\n"
        "  retention_days: 7\n"
        "  include: [traefik, docker-compose.yml]\n"
        "dns:\n"
        "  records: [traefik]\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.project_root == tmp_path / "homelab"
    assert config.roles_dir == tmp_path / "homelab" / "roles"
    assert config.instance_root == Path("/srv/instances")
    assert config.editor == "vim"
    assert config.backups.retention_days == 7
    assert config.backups.include == ("traefik", "docker-compose.yml")
    assert config.dns.records == ("traefik",)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "homelabctl.yml"
    cfg.write_text("backups:\n  retention_days: 7\n", encoding="utf-8")
    env = {
        CONFIG_ENV_VAR: str(cfg),
        "HOMELABCTL_BACKUPS__RETENTION_DAYS": "14",
        "HOMELABCTL_DNS__RESOLVER": "9.9.9.9",
        "HOMELABCTL_DNS__IP_SERVICES": "https://a.example, https://b.example",
        "HOMELABCTL_LOCK_TIMEOUT": "45",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.backups.retention_days == 14
    assert config.dns.resolver == "9.9.9.9"
    assert config.dns.ip_services == ("https://a.example", "https://b.example")
    assert config.lock_timeout == 45.0


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    """Explicit overrides beat environment values."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"HOMELABCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 5},
    )

    assert config.lock_timeout == 5.0


def test_editor_falls_back_to_environment(tmp_path: Path) -> None:
    """``$EDITOR`` is used when the config does not name an editor."""
    config = load_config(config_file=tmp_path / "missing.yml", env={"EDITOR": "emacs"})

    assert config.editor == "emacs"


def test_unknown_top_level_key_rejected(tmp_path: Path) -> None:
    """Unknown keys raise ConfigError."""
    cfg = tmp_path / "homelabctl.yml"
    cfg.write_text("unexpected: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    """Unknown keys inside a section raise ConfigError."""
    cfg = tmp_path / "homelabctl.yml"
    cfg.write_text("dns:\n  zone: abc\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown dns configuration keys"):
        load_config(config_file=cfg, env={})


def test_negative_retention_rejected(tmp_path: Path) -> None:
    """Retention must not be negative."""
    with pytest.raises(ConfigError, match="retention_days"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"backups": {"retention_days": -1}},
        )


def test_non_mapping_file_rejected(tmp_path: Path) -> None:
    """A YAML list at the top level is not a configuration."""
    cfg = tmp_path / "homelabctl.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` renders paths as strings and nests sections."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["config_file"] == str(tmp_path / "missing.yml")
    assert isinstance(data["backups"], dict)
    assert data["compose"] == {"docker_bin": "docker", "default_project": "homelab"}
