import tomllib
from pathlib import Path

import pytest

from oroboreo import __version__
from oroboreo.config import (
    ConfigError,
    OroboreoConfig,
    WorkspacePaths,
    apply_env_overrides,
    dumps_toml,
    load_config,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "oroboreo.toml"
    config = OroboreoConfig.default()
    config.loop.max_global_loops = 12
    config.loop.cooldown_seconds = 0.5
    config.timeouts.task_timeout_ms = 90_000
    config.git.base_branch = "trunk"
    config.git.auto_create_pr = False
    config.agent.command = "claude"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.loop.max_global_loops == 12
    assert loaded.loop.cooldown_seconds == 0.5
    assert loaded.loop.max_retries_per_task == 5
    assert loaded.timeouts.task_timeout_ms == 90_000
    assert loaded.timeouts.task_timeout_seconds == 90.0
    assert loaded.git.base_branch == "trunk"
    assert loaded.git.auto_create_pr is False
    assert loaded.agent.command == "claude"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(OroboreoConfig.default())

    for section in ("[loop]", "[timeouts]", "[git]", "[agent]"):
        assert section in rendered
    assert "task_timeout_ms = 1800000" in rendered
    assert 'branch_prefix = "oreo-"' in rendered


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.loop.max_global_loops == 100
    assert config.timeouts.git_timeout_ms == 60_000
    assert config.git.commit_on_success is True


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "oroboreo.toml"
    config_path.write_text("[loop\nmax_global_loops = ", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(config_path)


def test_unknown_key_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "oroboreo.toml"
    config_path.write_text("[loop]\nmax_loops = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration key"):
        load_config(config_path)


def test_env_overrides_timeouts() -> None:
    config = apply_env_overrides(
        OroboreoConfig.default(),
        {
            "OREO_TASK_TIMEOUT_MS": "2500",
            "OREO_GIT_TIMEOUT_MS": " 750 ",
            "OREO_HEARTBEAT_MS": "",
        },
    )

    assert config.timeouts.task_timeout_ms == 2500
    assert config.timeouts.git_timeout_ms == 750
    assert config.timeouts.heartbeat_ms == 60_000


@pytest.mark.parametrize("raw", ["soon", "-5", "0"])
def test_env_override_rejects_bad_values(raw: str) -> None:
    with pytest.raises(ConfigError, match="OREO_TASK_TIMEOUT_MS"):
        apply_env_overrides(OroboreoConfig.default(), {"OREO_TASK_TIMEOUT_MS": raw})


def test_workspace_paths_layout(tmp_path: Path) -> None:
    paths = WorkspacePaths.from_root(tmp_path)

    assert paths.workdir == tmp_path.resolve() / "oroboreo"
    assert paths.tasks.name == "cookie-crumbs.md"
    assert paths.rules.name == "creme-filling.md"
    assert paths.log.name == "oreo-execution.log"
    assert paths.reusable_tests == paths.workdir / "tests" / "reusable"
    assert paths.prompt in paths.temp_prompt_files


def test_package_version_constant_matches_pyproject() -> None:
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    data = tomllib.loads(pyproject.read_text(encoding="utf-8"))

    assert __version__ == data["project"]["version"]
