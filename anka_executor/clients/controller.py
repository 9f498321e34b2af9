import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from anka_executor.clients.tls import build_ssl_context
from anka_executor.errors import (
    ControllerError,
    ControllerRequestError,
    MalformedResponseError,
    OperationCancelled,
    TransientError,
)
from anka_executor.schemas import STATUS_OK, Envelope


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SEC = 10.0
DEFAULT_MAX_IDLE_CONNS_PER_HOST = 20
EOF_RETRY_DELAY_SEC = 1.0


@dataclass
class ClientConfig:
    base_url: str
    ca_cert_path: str | None = None
    skip_tls_verify: bool = False
    client_cert_path: str | None = None
    client_cert_key_path: str | None = None
    custom_headers: dict[str, str] = field(default_factory=dict)
    max_idle_conns_per_host: int = DEFAULT_MAX_IDLE_CONNS_PER_HOST
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC

    @property
    def is_tls(self) -> bool:
        return self.base_url.startswith("https")


class ControllerClient:
    """Thin JSON client for the controller REST API.

    Returns the raw response bytes once the ``{status, message, body}``
    envelope has been checked; decoding the body is left to callers.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        stop_event: threading.Event | None = None,
        transport: httpx.BaseTransport | None = None,
        log: logging.Logger | None = None,
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.stop_event = stop_event or threading.Event()
        self.log = log or logger

        verify: Any = True
        if config.is_tls:
            verify = build_ssl_context(
                ca_cert_path=config.ca_cert_path,
                skip_tls_verify=config.skip_tls_verify,
                client_cert_path=config.client_cert_path,
                client_cert_key_path=config.client_cert_key_path,
                log=self.log,
            )

        self.timeout = config.request_timeout_sec or DEFAULT_REQUEST_TIMEOUT_SEC
        max_idle = config.max_idle_conns_per_host or DEFAULT_MAX_IDLE_CONNS_PER_HOST
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=dict(config.custom_headers),
            limits=httpx.Limits(max_keepalive_connections=max_idle),
            verify=verify,
            transport=transport,
        )

    def get(self, path: str, params: dict[str, str] | None = None) -> bytes:
        return self._request("GET", path, params=params or None)

    def post(self, path: str, payload: Any) -> bytes:
        return self._request("POST", path, payload=payload)

    def delete(self, path: str, payload: Any) -> bytes:
        return self._request("DELETE", path, payload=payload)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ControllerClient":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: Any = None,
    ) -> bytes:
        url = f"{self.base_url}{path}"
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if method != "GET":
            kwargs["json"] = payload

        for attempt in (1, 2):
            if self.stop_event.is_set():
                raise OperationCancelled(f"{method} request to {url} cancelled")
            try:
                status_code, raw = self._send(method, path, kwargs)
            except httpx.TimeoutException as exc:
                raise TransientError(
                    f"failed to send {method} request to {url} with payload "
                    f"{payload!r}: {exc}"
                ) from exc
            except (httpx.RemoteProtocolError, httpx.ReadError) as exc:
                if attempt == 2:
                    raise ControllerRequestError(
                        method=method, url=url, detail=str(exc)
                    ) from exc
                self.log.debug(
                    "unexpected EOF from %s %s, retrying once in %.1fs: %s",
                    method,
                    url,
                    EOF_RETRY_DELAY_SEC,
                    exc,
                )
                if self.stop_event.wait(EOF_RETRY_DELAY_SEC):
                    raise OperationCancelled(
                        f"{method} request to {url} cancelled"
                    ) from exc
                continue
            except httpx.RequestError as exc:
                raise ControllerRequestError(
                    method=method, url=url, detail=str(exc)
                ) from exc
            return self._check(method, url, payload, status_code, raw)
        raise AssertionError("unreachable")

    def _send(
        self, method: str, path: str, kwargs: dict[str, Any]
    ) -> tuple[int, bytes]:
        # httpx timeouts apply per phase, the deadline bounds the whole exchange
        deadline = time.monotonic() + self.timeout
        with self.client.stream(method, path, **kwargs) as response:
            chunks = []
            for chunk in response.iter_bytes():
                if time.monotonic() > deadline:
                    raise httpx.ReadTimeout(
                        f"request exceeded {self.timeout:.1f}s deadline",
                        request=response.request,
                    )
                chunks.append(chunk)
            return response.status_code, b"".join(chunks)

    def _check(
        self, method: str, url: str, payload: Any, status_code: int, raw: bytes
    ) -> bytes:
        try:
            envelope = Envelope[Any].model_validate_json(raw)
        except ValidationError as exc:
            raise MalformedResponseError(
                detail=str(exc), body=raw, status_code=status_code
            ) from exc

        if status_code != httpx.codes.OK or envelope.status != STATUS_OK:
            raise ControllerError(
                method=method,
                url=url,
                status_code=status_code,
                message=envelope.message or envelope.status,
            )

        self.log.debug(
            "%s request sent to %s\nRaw payload: %r\nResponse status code: %d\n"
            "Raw body: %s",
            method,
            url,
            payload,
            status_code,
            raw.decode("utf-8", errors="replace"),
        )
        return raw
