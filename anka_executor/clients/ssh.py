import logging
import select
import threading
from typing import BinaryIO

import paramiko

from anka_executor.errors import OperationCancelled, RemoteShellError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024
CONNECT_TIMEOUT_SEC = 30.0
POLL_TIMEOUT_SEC = 0.5


def _drain(channel: paramiko.Channel, stdout: BinaryIO, stderr: BinaryIO) -> None:
    while channel.recv_ready():
        stdout.write(channel.recv(CHUNK_SIZE))
        stdout.flush()
    while channel.recv_stderr_ready():
        stderr.write(channel.recv_stderr(CHUNK_SIZE))
        stderr.flush()


def _finished(channel: paramiko.Channel) -> bool:
    return (
        channel.exit_status_ready()
        and not channel.recv_ready()
        and not channel.recv_stderr_ready()
    )


def _cancel(channel: paramiko.Channel, stop_event: threading.Event) -> None:
    if stop_event.is_set():
        channel.close()
        raise OperationCancelled("remote execution cancelled")


def _stream(
    channel: paramiko.Channel,
    script: BinaryIO,
    stdout: BinaryIO,
    stderr: BinaryIO,
    stop_event: threading.Event,
    log: logging.Logger,
) -> int:
    for chunk in iter(lambda: script.read(CHUNK_SIZE), b""):
        _cancel(channel, stop_event)
        channel.sendall(chunk)
        _drain(channel, stdout, stderr)
    channel.shutdown_write()

    log.info("waiting for remote execution to finish")
    while not _finished(channel):
        _cancel(channel, stop_event)
        select.select([channel], [], [], POLL_TIMEOUT_SEC)
        _drain(channel, stdout, stderr)
    return channel.recv_exit_status()


def run_script(
    host: str,
    port: int,
    username: str,
    password: str,
    script: BinaryIO,
    *,
    stdout: BinaryIO,
    stderr: BinaryIO,
    stop_event: threading.Event | None = None,
    log: logging.Logger | None = None,
) -> int:
    """Feed ``script`` to the remote shell on ``host:port`` and stream its output.

    Returns the remote exit status.
    """
    log = log or logger
    stop_event = stop_event or threading.Event()

    client = paramiko.SSHClient()
    # VMs are ephemeral, their host keys are never known in advance
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        try:
            client.connect(
                host,
                port=port,
                username=username,
                password=password,
                timeout=CONNECT_TIMEOUT_SEC,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteShellError(host=host, port=port, detail=str(exc)) from exc
        log.info("ssh connection established to %s:%d", host, port)

        transport = client.get_transport()
        if transport is None:
            raise RemoteShellError(host=host, port=port, detail="no transport")
        try:
            channel = transport.open_session()
            channel.invoke_shell()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteShellError(host=host, port=port, detail=str(exc)) from exc
        log.debug("ssh session opened")

        try:
            exit_status = _stream(channel, script, stdout, stderr, stop_event, log)
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteShellError(host=host, port=port, detail=str(exc)) from exc
        log.info("remote execution finished with status %d", exit_status)
        return exit_status
    finally:
        client.close()
