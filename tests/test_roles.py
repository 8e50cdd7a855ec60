"""Tests for role templates and instance env rendering."""
from __future__ import annotations

from pathlib import Path

import pytest

from homelabctl.roles import (
    GENERATED_HEADER,
    RoleError,
    RoleTemplate,
    available_roles,
    instance_dir,
    instance_subdomain,
    parse_instances,
    project_name,
    validate_name,
)

LEGACY_TEMPLATE = """\
# MySQL role
INSTANCES=dev, prod
MYSQL_ROOT_PASSWORD=default
MYSQL_DATABASE=app

dev_MYSQL_ROOT_PASSWORD=secret
prod_MYSQL_DATABASE=production
"""


def _make_role(roles_dir: Path, name: str, *, env: str = "", manifest: str | None = None) -> Path:
    path = roles_dir / name
    path.mkdir(parents=True)
    (path / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    if env:
        (path / ".env.example").write_text(env, encoding="utf-8")
    if manifest is not None:
        (path / "role.yml").write_text(manifest, encoding="utf-8")
    return path


def test_parse_instances_trims_and_drops_empty() -> None:
    """Names are trimmed, quotes dropped and duplicates collapsed."""
    assert parse_instances("a, b ,c") == ["a", "b", "c"]
    assert parse_instances('"a,,b, a"') == ["a", "b"]
    assert parse_instances(None) == ["default"]
    assert parse_instances(" , ") == ["default"]


def test_naming_helpers() -> None:
    """Directory, project and subdomain names follow the role/instance pair."""
    assert instance_dir(Path("/opt/homelab/instances"), "mysql", "dev") == Path(
        "/opt/homelab/instances/mysql-dev"
    )
    assert project_name("homelab", "mysql", "dev") == "homelab-mysql-dev"
    assert instance_subdomain("dev") == "dev-"
    assert instance_subdomain("default") == ""


@pytest.mark.parametrize("value", ["", "-bad", "has space", "../escape"])
def test_validate_name_rejects_invalid(value: str) -> None:
    """Names must start alphanumeric and avoid path characters."""
    with pytest.raises(RoleError):
        validate_name(value)


def test_available_roles_lists_directories(tmp_path: Path) -> None:
    """Only non-hidden directories count as roles."""
    _make_role(tmp_path, "mysql")
    _make_role(tmp_path, "wordpress")
    (tmp_path / ".git").mkdir()
    (tmp_path / "README.md").write_text("x", encoding="utf-8")

    assert available_roles(tmp_path) == ["mysql", "wordpress"]
    assert available_roles(tmp_path / "missing") == []


def test_unknown_role_raises(tmp_path: Path) -> None:
    """Loading a role that does not exist is a RoleError."""
    with pytest.raises(RoleError, match="not found"):
        RoleTemplate.load(tmp_path, "ghost")


def test_legacy_overrides_become_structured(tmp_path: Path) -> None:
    """``<instance>_<KEY>`` lines are converted into per-instance mappings."""
    _make_role(tmp_path, "mysql", env=LEGACY_TEMPLATE)

    role = RoleTemplate.load(tmp_path, "mysql")

    assert role.instance_names() == ["dev", "prod"]
    assert role.overrides_for("dev") == {"MYSQL_ROOT_PASSWORD": "secret"}
    assert role.overrides_for("prod") == {"MYSQL_DATABASE": "production"}
    assert role.overrides_for("qa") == {}


def test_render_instance_env_substitutes_overrides(tmp_path: Path) -> None:
    """The instance file carries overrides and generated variables only."""
    _make_role(tmp_path, "mysql", env=LEGACY_TEMPLATE)
    role = RoleTemplate.load(tmp_path, "mysql")

    rendered = role.render_instance_env("dev", base_project="homelab")
    lines = rendered.splitlines()

    assert "MYSQL_ROOT_PASSWORD=secret" in lines
    assert "MYSQL_DATABASE=app" in lines
    assert "# MySQL role" in lines
    assert not any(line.startswith("INSTANCES=") for line in lines)
    assert not any(line.startswith(("dev_", "prod_")) for line in lines)
    assert lines[-4:] == [
        GENERATED_HEADER,
        "INSTANCE_NAME=dev",
        "COMPOSE_PROJECT_NAME=homelab-mysql-dev",
        "INSTANCE_SUBDOMAIN=dev-",
    ]


def test_override_requires_template_key(tmp_path: Path) -> None:
    """Prefixed lines are plain variables unless they shadow a template key."""
    _make_role(
        tmp_path,
        "app",
        env="INSTANCES=dev\nPORT=80\ndev_UNRELATED=1\n",
    )
    role = RoleTemplate.load(tmp_path, "app")

    assert role.overrides_for("dev") == {}
    assert "dev_UNRELATED=1" in role.render_instance_env("dev", base_project="h").splitlines()


def test_longest_instance_prefix_wins(tmp_path: Path) -> None:
    """``dev_eu_KEY`` belongs to ``dev_eu`` rather than ``dev``."""
    _make_role(tmp_path, "app", env="INSTANCES=dev,dev_eu\nKEY=a\ndev_eu_KEY=b\ndev_KEY=c\n")

    role = RoleTemplate.load(tmp_path, "app")

    assert role.overrides_for("dev_eu") == {"KEY": "b"}
    assert role.overrides_for("dev") == {"KEY": "c"}


def test_undeclared_instance_uses_its_prefixed_lines(tmp_path: Path) -> None:
    """An instance outside ``INSTANCES`` still gets its own override lines."""
    _make_role(
        tmp_path,
        "mysql",
        env="MYSQL_ROOT_PASSWORD=default\nstaging_MYSQL_ROOT_PASSWORD=secret\n",
    )
    role = RoleTemplate.load(tmp_path, "mysql")

    lines = role.render_instance_env("staging", base_project="homelab").splitlines()

    assert role.instance_names() == ["default"]
    assert role.overrides_for("staging") == {"MYSQL_ROOT_PASSWORD": "secret"}
    assert "MYSQL_ROOT_PASSWORD=secret" in lines
    assert not any(line.startswith("staging_") for line in lines)


def test_empty_override_keeps_template_default(tmp_path: Path) -> None:
    """An override with no value leaves the template value in place."""
    _make_role(
        tmp_path,
        "mysql",
        env="INSTANCES=dev\nMYSQL_ROOT_PASSWORD=default\ndev_MYSQL_ROOT_PASSWORD=\n",
    )
    role = RoleTemplate.load(tmp_path, "mysql")

    lines = role.render_instance_env("dev", base_project="homelab").splitlines()

    assert role.overrides_for("dev") == {}
    assert "MYSQL_ROOT_PASSWORD=default" in lines
    assert not any(line.startswith("dev_") for line in lines)


def test_manifest_overrides_win_and_extra_keys_appended(tmp_path: Path) -> None:
    """``role.yml`` overrides beat legacy lines and add new keys."""
    _make_role(
        tmp_path,
        "mysql",
        env=LEGACY_TEMPLATE,
        manifest=(
            "instances:\n"
            "  dev:\n"
            "    MYSQL_ROOT_PASSWORD: from-manifest\n"
            "    EXTRA_FLAG: true\n"
            "  staging: {}\n"
        ),
    )

    role = RoleTemplate.load(tmp_path, "mysql")
    lines = role.render_instance_env("dev", base_project="lab").splitlines()

    assert role.instance_names() == ["dev", "staging", "prod"]
    assert "MYSQL_ROOT_PASSWORD=from-manifest" in lines
    assert "EXTRA_FLAG=true" in lines


def test_manifest_list_form(tmp_path: Path) -> None:
    """A list of names declares instances without overrides."""
    _make_role(tmp_path, "redis", manifest="instances: [cache, queue]\n")

    role = RoleTemplate.load(tmp_path, "redis")

    assert role.instance_names() == ["cache", "queue"]


def test_role_without_declaration_has_default_instance(tmp_path: Path) -> None:
    """A role with nothing declared has the single ``default`` instance."""
    _make_role(tmp_path, "whoami", env="PORT=80\n")

    role = RoleTemplate.load(tmp_path, "whoami")
    lines = role.render_instance_env("default", base_project="homelab").splitlines()

    assert role.instance_names() == ["default"]
    assert "INSTANCE_SUBDOMAIN=" in lines


def test_invalid_manifest_rejected(tmp_path: Path) -> None:
    """Overrides must be mappings."""
    _make_role(tmp_path, "bad", manifest="instances:\n  dev: [1, 2]\n")

    with pytest.raises(RoleError, match="must be a mapping"):
        RoleTemplate.load(tmp_path, "bad")


def test_copy_files_skips_manifest(tmp_path: Path) -> None:
    """Role files are copied except for the manifest."""
    _make_role(tmp_path / "roles", "redis", env="A=1\n", manifest="instances: [a]\n")
    role = RoleTemplate.load(tmp_path / "roles", "redis")

    destination = tmp_path / "instances" / "redis-a"
    role.copy_files(destination)

    assert (destination / "docker-compose.yml").is_file()
    assert (destination / ".env.example").is_file()
    assert not (destination / "role.yml").exists()
