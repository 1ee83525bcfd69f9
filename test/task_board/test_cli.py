"""
Test Suite for the Click CLI.

Server startup is exercised with uvicorn mocked out; the profile command is
exercised with the network fetch mocked so no server is needed.
"""

import json
import os
import sys
from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.cli import main


class TestServeCommand:

    def test_serve_passes_settings_to_uvicorn(self, tmp_path):
        db_path = str(tmp_path / "cli.db")
        runner = CliRunner()
        with patch("task_board.cli.uvicorn.run") as mock_run, \
                patch("task_board.cli.create_app") as mock_create_app:
            result = runner.invoke(main, [
                "serve", "--db-path", db_path, "--port", "9123",
                "--enrollment-policy", "require_participation", "--log-level", "debug",
            ])

        assert result.exit_code == 0, result.output
        settings = mock_create_app.call_args[0][0]
        assert settings.database_path == db_path
        assert settings.port == 9123
        assert settings.enrollment_policy == "require_participation"
        assert settings.log_level == "DEBUG"
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 9123

    def test_serve_rejects_unknown_policy(self):
        result = CliRunner().invoke(main, ["serve", "--enrollment-policy", "anything"])
        assert result.exit_code != 0
        assert "anything" in result.output

    def test_serve_reads_environment(self, tmp_path):
        runner = CliRunner(env={"TASK_BOARD_PORT": "9555", "TASK_BOARD_DB_PATH": str(tmp_path / "env.db")})
        with patch("task_board.cli.uvicorn.run") as mock_run, patch("task_board.cli.create_app"):
            result = runner.invoke(main, ["serve"])
        assert result.exit_code == 0, result.output
        assert mock_run.call_args.kwargs["port"] == 9555


class TestProfileCommand:

    def test_profile_prints_json(self):
        profile = {"login": "alice", "completedCount": 2, "totalTasks": 3, "completedTasks": 2,
                   "sharedTasks": 1, "tasks": []}
        fetch = AsyncMock(return_value={"success": True, "profile": profile})
        with patch("task_board.cli.fetch_profile", fetch):
            result = CliRunner().invoke(main, ["profile", "alice", "--url", "ws://example:1/ws"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == profile
        assert fetch.call_args[0][:2] == ("ws://example:1/ws", "alice")

    def test_profile_error_exit_code(self):
        fetch = AsyncMock(return_value={"success": False, "error": "User 'ghost' not found", "code": "NotFound"})
        with patch("task_board.cli.fetch_profile", fetch):
            result = CliRunner().invoke(main, ["profile", "ghost"])

        assert result.exit_code == 1
        assert "NotFound" in result.output
