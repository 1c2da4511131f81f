"""``laminar-rollout`` command line entry."""

import asyncio
import sys
from collections.abc import Sequence

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from laminar_rollout.logging import setup_logging

from .session import DevSession

USAGE = (
    "usage: laminar-rollout dev [FILE] [--module MODULE] [--function NAME] [--project-api-key KEY]\n"
    "                           [--base-url URL] [--port PORT] [--grpc-port PORT] [--frontend-port PORT]\n"
    "                           [--command COMMAND] [--command-args ARG ...] [--log-level LEVEL]"
)


class DevOptions(BaseSettings):
    """Serve a rollout function to the Laminar dashboard for interactive debugging."""

    model_config = SettingsConfigDict(
        env_prefix="LAMINAR_ROLLOUT_DEV_",
        cli_kebab_case=True,
        cli_exit_on_error=True,
        cli_prog_name="laminar-rollout dev",
        cli_use_class_docs_for_groups=True,
        frozen=True,
        extra="ignore",
    )

    file: str | None = Field(default=None, description="Python file containing the rollout function")
    module: str | None = Field(default=None, description="Importable module containing the rollout function")
    function: str | None = Field(default=None, description="Function to serve when several are defined")
    project_api_key: str | None = Field(default=None, description="Laminar project API key")
    base_url: str | None = Field(default=None, description="Laminar backend URL")
    port: int | None = Field(default=None, description="Backend HTTP port")
    grpc_port: int | None = Field(default=None, description="Backend gRPC port")
    frontend_port: int | None = Field(default=None, description="Dashboard port for a local backend")
    command: str | None = Field(default=None, description="Custom worker command")
    command_args: list[str] = Field(default_factory=list, description="Arguments of the custom worker command")
    log_level: str | None = Field(default=None, description="Log level of the laminar_rollout loggers")


def parse_dev_options(argv: Sequence[str]) -> DevOptions:
    """Parse ``dev`` arguments. A leading bare argument is the target file."""
    args = list(argv)
    if args and not args[0].startswith("-"):
        args = ["--file", args[0], *args[1:]]
    return DevOptions(_cli_parse_args=args)  # pyright: ignore[reportCallIssue]


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] in ("-h", "--help"):
        print(USAGE)
        return 0 if args else 2
    if args[0] != "dev":
        print(f"Unknown command: {args[0]}\n{USAGE}", file=sys.stderr)
        return 2

    options = parse_dev_options(args[1:])
    setup_logging(level=options.log_level)

    if not options.file and not options.module:
        print(f"Either FILE or --module is required\n{USAGE}", file=sys.stderr)
        return 2

    session = DevSession(
        file_path=options.file,
        module_path=options.module,
        function_name=options.function,
        project_api_key=options.project_api_key,
        base_url=options.base_url,
        http_port=options.port,
        grpc_port=options.grpc_port,
        frontend_port=options.frontend_port,
        command=options.command,
        command_args=options.command_args,
    )
    return asyncio.run(session.run())


if __name__ == "__main__":
    sys.exit(main())
