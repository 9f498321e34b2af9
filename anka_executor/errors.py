import httpx


class ExecutorError(RuntimeError):
    pass


class TransientError(ExecutorError):
    """Failure that is likely to go away if the whole CI job is retried."""


class RetryExhausted(TransientError):
    def __init__(self, *, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")


class OperationCancelled(ExecutorError):
    def __init__(self, detail: str = "operation cancelled"):
        self.detail = detail
        super().__init__(detail)


class ConfigurationError(ExecutorError):
    pass


class ControllerRequestError(ExecutorError):
    def __init__(self, *, method: str, url: str, detail: str):
        self.method = method
        self.url = url
        self.detail = detail
        super().__init__(f"failed to send {method} request to {url}: {detail}")


class ControllerError(ExecutorError):
    def __init__(self, *, method: str, url: str, status_code: int, message: str):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.message = message
        super().__init__(
            f"{method} {url} failed: status code: {status_code}, error: {message}"
        )


class MalformedResponseError(ExecutorError):
    def __init__(self, *, detail: str, body: bytes, status_code: int | None = None):
        self.detail = detail
        self.body = body
        self.status_code = status_code
        text = body.decode("utf-8", errors="replace")[:240]
        prefix = f"status code: {status_code}, " if status_code is not None else ""
        super().__init__(f"{prefix}failed to decode response body {text!r}: {detail}")


class NotFoundError(ExecutorError):
    pass


class InstanceStateError(ExecutorError):
    def __init__(self, message: str, *, instance_id: str, state: str):
        self.instance_id = instance_id
        self.state = state
        super().__init__(message)


class InvalidRequestError(ExecutorError):
    pass


class RemoteShellError(ExecutorError):
    def __init__(self, *, host: str, port: int, detail: str):
        self.host = host
        self.port = port
        self.detail = detail
        super().__init__(f"ssh session to {host}:{port} failed: {detail}")


class BuildFailure(ExecutorError):
    def __init__(self, exit_status: int):
        self.exit_status = exit_status
        super().__init__(f"remote script exited with status {exit_status}")


def _error_chain(exc: BaseException):
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def is_cancelled(exc: BaseException) -> bool:
    return any(isinstance(err, OperationCancelled) for err in _error_chain(exc))


def is_transient(exc: BaseException) -> bool:
    if is_cancelled(exc):
        return False
    return any(
        isinstance(err, (TransientError, httpx.TimeoutException))
        for err in _error_chain(exc)
    )
