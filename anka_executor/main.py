import json
import logging
import signal
import sys
import threading

import click

from anka_executor.config import get_exit_codes, get_settings
from anka_executor.errors import (
    BuildFailure,
    ConfigurationError,
    is_cancelled,
    is_transient,
)
from anka_executor.logging_config import configure_logging
from anka_executor.services.stages import (
    build_controller,
    execute_cleanup,
    execute_config,
    execute_prepare,
    execute_run,
    get_version,
)


logger = logging.getLogger(__name__)
stop_event = threading.Event()


def _handle_signal(signum: int, _frame: object) -> None:
    logger.warning("received signal %d, cancelling", signum)
    stop_event.set()


@click.group(
    help="GitLab Custom Executor that runs jobs on Anka Cloud VMs.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=get_version(), prog_name="anka-gitlab-executor")
def cli() -> None:
    pass


@cli.command(
    "config", help="https://docs.gitlab.com/runner/executors/custom.html#config"
)
def config_command() -> None:
    settings = get_settings()
    log = configure_logging(settings.debug, sys.stderr)
    log.info("running config stage")
    click.echo(json.dumps(execute_config(settings), indent=2))


@cli.command(
    "prepare", help="https://docs.gitlab.com/runner/executors/custom.html#prepare"
)
def prepare_command() -> None:
    settings = get_settings()
    log = configure_logging(settings.debug, sys.stderr)
    controller = build_controller(settings, stop_event, log)
    try:
        execute_prepare(settings, controller, stop_event=stop_event, log=log)
    finally:
        controller.client.close()


@cli.command("run", help="https://docs.gitlab.com/runner/executors/custom.html#run")
@click.argument("script")
@click.argument("stage")
def run_command(script: str, stage: str) -> None:
    settings = get_settings()
    log = configure_logging(settings.debug, sys.stderr)
    controller = build_controller(settings, stop_event, log)
    try:
        execute_run(settings, controller, script, stage, stop_event=stop_event, log=log)
    finally:
        controller.client.close()


@cli.command(
    "cleanup", help="https://docs.gitlab.com/runner/executors/custom.html#cleanup"
)
def cleanup_command() -> None:
    settings = get_settings()
    log = configure_logging(settings.debug, sys.stdout)
    controller = build_controller(settings, stop_event, log)
    try:
        execute_cleanup(settings, controller, log=log)
    finally:
        controller.client.close()


def main(argv: list[str] | None = None) -> int:
    """Run the executor and map failures onto the exit codes GitLab expects."""
    configure_logging()
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        exit_codes = get_exit_codes()
    except ConfigurationError as exc:
        logger.error("failed reading exit codes: %s", exc)
        return 1

    try:
        result = cli.main(
            args=argv, prog_name="anka-gitlab-executor", standalone_mode=False
        )
    except click.ClickException as exc:
        exc.show()
        return exit_codes.build_failure_exit_code
    except click.Abort:
        return exit_codes.system_failure_exit_code
    except BuildFailure as exc:
        logger.error("error: %s", exc)
        return exit_codes.build_failure_exit_code
    except Exception as exc:  # noqa: BLE001
        logger.error("error: %s", exc)
        if is_cancelled(exc) or is_transient(exc):
            return exit_codes.system_failure_exit_code
        return exit_codes.build_failure_exit_code
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
