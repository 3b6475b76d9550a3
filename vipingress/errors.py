"""Error taxonomy shared by the reconciler, its collaborators and the controller."""

from typing import Optional


class OperatorError(Exception):
    """Base class for all errors raised by vipingress."""


class IngressValidationError(OperatorError):
    """The Ingress cannot be served as written.

    Permanent until the Ingress spec changes. ``reason`` tells whether the
    problem lies with the Ingress itself or with its target ProxyGroup.
    """

    REASON_INGRESS = "ingress"
    REASON_PROXY_GROUP = "proxygroup"

    def __init__(self, message: str, reason: str = REASON_INGRESS):
        super().__init__(message)
        self.reason = reason

    @property
    def is_proxy_group_problem(self) -> bool:
        return self.reason == self.REASON_PROXY_GROUP


class NotFoundError(OperatorError):
    """An object that was asked for does not exist (yet)."""

    def __init__(self, kind: str, name: str, namespace: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {where} not found")


class ConflictError(OperatorError):
    """A compare-and-swap write lost against a concurrent writer."""


class TransientBackendError(OperatorError):
    """The object store or the tailnet directory is temporarily unavailable."""


class InvariantViolation(OperatorError):
    """Internal bookkeeping went wrong, e.g. releasing a still-referenced resource."""


def is_not_found(err: BaseException) -> bool:
    """Return True if ``err`` reports a missing object."""
    return isinstance(err, NotFoundError)


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ConflictError)
