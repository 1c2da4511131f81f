"""Tests for the laminar-rollout command line."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from laminar_rollout.dev import main, parse_dev_options


@pytest.fixture
def dev_session():
    with (
        patch("laminar_rollout.dev._cli.DevSession") as session_cls,
        patch("laminar_rollout.dev._cli.setup_logging") as setup,
    ):
        session_cls.return_value.run = AsyncMock(return_value=0)
        session_cls.setup_logging = setup
        yield session_cls


class TestParseDevOptions:
    def test_bare_file_argument(self):
        options = parse_dev_options(["agent.py", "--function", "agent"])

        assert options.file == "agent.py"
        assert options.function == "agent"
        assert options.module is None

    def test_module_and_ports(self):
        options = parse_dev_options(["--module", "pkg.agents", "--port", "8000", "--grpc-port", "8001"])

        assert options.module == "pkg.agents"
        assert options.port == 8000
        assert options.grpc_port == 8001

    def test_custom_command(self):
        options = parse_dev_options(
            ["agent.ts", "--command", "npx", "--command-args", "tsx", "--command-args", "worker.ts"]
        )

        assert options.command == "npx"
        assert options.command_args == ["tsx", "worker.ts"]

    def test_defaults(self):
        options = parse_dev_options([])

        assert options.file is None
        assert options.command_args == []
        assert options.log_level is None

    def test_environment_fallback(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LAMINAR_ROLLOUT_DEV_FUNCTION", "from-env")
        assert parse_dev_options(["agent.py"]).function == "from-env"


class TestMain:
    def test_no_arguments_prints_usage(self, capsys: pytest.CaptureFixture[str]):
        assert main([]) == 2
        assert capsys.readouterr().out.startswith("usage: laminar-rollout dev")

    def test_help(self, capsys: pytest.CaptureFixture[str]):
        assert main(["--help"]) == 0
        assert "--module MODULE" in capsys.readouterr().out

    def test_unknown_command(self, capsys: pytest.CaptureFixture[str]):
        assert main(["serve"]) == 2
        assert "Unknown command: serve" in capsys.readouterr().err

    def test_target_required(self, dev_session: MagicMock, capsys: pytest.CaptureFixture[str]):
        assert main(["dev", "--function", "agent"]) == 2

        assert "Either FILE or --module is required" in capsys.readouterr().err
        dev_session.assert_not_called()

    def test_runs_dev_session(self, dev_session: MagicMock):
        assert main(["dev", "agent.py", "--project-api-key", "secret", "--port", "8000", "--log-level", "DEBUG"]) == 0

        dev_session.assert_called_once_with(
            file_path="agent.py",
            module_path=None,
            function_name=None,
            project_api_key="secret",
            base_url=None,
            http_port=8000,
            grpc_port=None,
            frontend_port=None,
            command=None,
            command_args=[],
        )
        dev_session.return_value.run.assert_awaited_once()
        dev_session.setup_logging.assert_called_once_with(level="DEBUG")

    def test_exit_code_propagates(self, dev_session: MagicMock):
        dev_session.return_value.run = AsyncMock(return_value=1)
        assert main(["dev", "--module", "pkg.agents"]) == 1
