"""
Tests for Wok3Context: wiring, config updates and env detection.
"""

import json

import pytest

from wok3.core.config.loader import load_config
from wok3.core.context import Wok3Context, detect_project_name
from wok3.core.errors import ConfigurationError


class TestProjectName:
    """Tests for project name detection."""

    def test_package_json_name(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"name": "shop-web"}))
        assert detect_project_name(tmp_path) == "shop-web"

    def test_directory_name_fallback(self, tmp_path):
        (tmp_path / "package.json").write_text("not json")
        assert detect_project_name(tmp_path) == tmp_path.name


class TestOpen:
    """Tests for building a context from disk."""

    def test_open_loads_config(self, project):
        context = Wok3Context.open(project)

        assert context.config.start_command == "sleep 30"
        assert context.allocator.enabled
        assert context.manager.config is context.config
        assert context.project_dir == project

    def test_open_without_config(self, git_repo):
        with pytest.raises(ConfigurationError, match="wok3 init"):
            Wok3Context.open(git_repo)


class TestUpdateConfig:
    """Tests for applying config updates to running components."""

    def test_update_propagates_and_records(self, context, project):
        updated = context.update_config({"ports": {"offsetStep": 100}, "startCommand": "npm start"})

        assert updated.ports.offset_step == 100
        assert context.allocator.allocate("x") == 100
        assert context.manager.config.start_command == "npm start"
        assert load_config(project, apply_env=False).ports.offset_step == 100

        event = context.activity.query(category="system")[-1]
        assert event.type == "config_updated"
        assert event.metadata["keys"] == ["ports", "startCommand"]

    def test_invalid_update_changes_nothing(self, context, project):
        with pytest.raises(ConfigurationError):
            context.update_config({"serverPort": "abc"})

        assert context.config.server_port == 6969
        assert load_config(project, apply_env=False).server_port == 6969


class TestDetectEnv:
    """Tests for env mapping detection."""

    def test_detect_env_persists_mapping(self, context, project):
        (project / ".env").write_text("API_URL=http://localhost:3000/api\nOTHER=1\n")

        mapping = context.detect_env()

        assert mapping == {"API_URL": "http://localhost:${0}/api"}
        assert load_config(project, apply_env=False).env_mapping == mapping


class TestLifecycle:
    """Tests for start and shutdown."""

    @pytest.mark.asyncio
    async def test_start_adopts_existing_and_shutdown_stops_all(self, context):
        created = await context.manager.create("one")
        assert created.success

        async with context:
            assert (await context.manager.start("one")).success
            assert context.supervisor.is_running("one")

        assert not context.supervisor.is_running("one")
        assert context.manager.get("one").status.value == "stopped"
        assert context.allocator.held() == {}
