import logging
import ssl

from anka_executor.errors import ConfigurationError


logger = logging.getLogger(__name__)


def build_ssl_context(
    *,
    ca_cert_path: str | None = None,
    skip_tls_verify: bool = False,
    client_cert_path: str | None = None,
    client_cert_key_path: str | None = None,
    log: logging.Logger | None = None,
) -> ssl.SSLContext:
    log = log or logger
    log.debug("handling TLS configuration")

    context = ssl.create_default_context()
    if ca_cert_path:
        try:
            context.load_verify_locations(cafile=ca_cert_path)
        except (OSError, ssl.SSLError) as exc:
            raise ConfigurationError(
                f"failed to add CA cert from {ca_cert_path!r} to pool: {exc}"
            ) from exc
        log.info("using CA cert from %r", ca_cert_path)

    if skip_tls_verify:
        log.info("allowing to skip server host verification")
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    # mTLS only when both halves of the key pair are configured
    if client_cert_path and client_cert_key_path:
        try:
            context.load_cert_chain(
                certfile=client_cert_path, keyfile=client_cert_key_path
            )
        except (OSError, ssl.SSLError) as exc:
            raise ConfigurationError(
                f"failed to process key pair (cert at {client_cert_path!r}, "
                f"key at {client_cert_key_path!r}): {exc}"
            ) from exc

    return context
