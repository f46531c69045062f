"""
Exception types shared by the gateway, store and workflows, plus the
network-error classifier used by the reconciler.
"""

import httpx
import requests


class StoreError(RuntimeError):
    """The database rejected a read or write."""


class KieError(RuntimeError):
    """Kie.ai refused a request (non-ok HTTP status or non-200 envelope code)."""


class ProviderNetworkError(RuntimeError):
    """Transport-level retries were exhausted talking to a provider."""


class WorkflowPreconditionError(ValueError):
    """Required input for a stage is missing (prompts, reference images, ...)."""


class InsufficientCreditsError(ValueError):
    pass


NETWORK_ERROR_SIGNATURES = (
    "connection timeout",
    "connect timeout",
    "und_err_connect_timeout",
    "fetch failed",
    "econnreset",
    "etimedout",
    "connection reset",
    "connection aborted",
    "read timed out",
    "max retries exceeded",
)

_TRANSPORT_ERRORS = (
    ProviderNetworkError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    httpx.TransportError,
)


def is_network_error(exc: BaseException) -> bool:
    """True when the error looks transient at the transport layer."""
    if isinstance(exc, _TRANSPORT_ERRORS):
        return True
    message = str(exc).lower()
    return any(signature in message for signature in NETWORK_ERROR_SIGNATURES)
