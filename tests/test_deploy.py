"""Tests for Compose project deployment."""

from unittest.mock import MagicMock

import pytest

from ec2_deploy.deploy import COMPOSE_COMMANDS, deploy_project
from ec2_deploy.errors import ConfigError, ProvisionFailed
from ec2_deploy.remote import CommandOutput


@pytest.fixture
def project(tmp_path):
    (tmp_path / "docker-compose.yml").write_text("services:\n  web:\n    build: ./backend\n")
    return str(tmp_path)


@pytest.fixture
def session() -> MagicMock:
    session = MagicMock()
    session.address = "203.0.113.5"
    session.execute.side_effect = lambda command: CommandOutput(command, 0, "", "")
    return session


class TestDeployProject:
    """Tests for deploy_project."""

    def test_uploads_and_runs_compose(self, session, project) -> None:
        outputs = deploy_project(session, project, "RepairManager")

        session.upload_directory.assert_called_once_with(project, "RepairManager")
        commands = [c.args[0] for c in session.execute.call_args_list]
        assert commands == [f"cd RepairManager && {command}" for command in COMPOSE_COMMANDS]
        assert all(output.ok for output in outputs)

    def test_missing_compose_file(self, session, tmp_path) -> None:
        with pytest.raises(ConfigError):
            deploy_project(session, str(tmp_path), "RepairManager")

        session.upload_directory.assert_not_called()

    def test_stops_at_first_failure(self, session, project) -> None:
        session.execute.side_effect = [
            CommandOutput("down", 0, "", ""),
            CommandOutput("up", 1, "", "failed to build backend\n"),
        ]

        with pytest.raises(ProvisionFailed) as exc_info:
            deploy_project(session, project, "RepairManager")

        assert session.execute.call_count == 2
        assert exc_info.value.stage == "deploy"
        assert exc_info.value.stderr == "failed to build backend\n"
