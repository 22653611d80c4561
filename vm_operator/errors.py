"""Error taxonomy for the reconciliation engine."""

from typing import Optional

from kubernetes.client.exceptions import ApiException

RETRYABLE_STATUS = frozenset({409, 429, 500, 502, 503, 504})


def is_retryable(exc: BaseException) -> bool:
    """Return True if a remote failure is expected to clear on retry."""
    if isinstance(exc, DeadlineExceededError):
        return True
    if isinstance(exc, ApiException):
        return exc.status in RETRYABLE_STATUS
    return False


class OperatorError(Exception):
    """Base class for engine errors."""

    pass


class DeadlineExceededError(OperatorError):
    """Raised when a remote call would outlive the reconcile pass deadline."""

    pass


class SelectionError(OperatorError):
    """Raised when selector evaluation against the platform failed."""

    def __init__(self, kind: str, namespace: Optional[str], cause: BaseException):
        self.kind = kind
        self.namespace = namespace
        self.cause = cause
        scope = namespace or "<cluster>"
        super().__init__(f"failed to select {kind} objects in {scope}: {cause}")


class CredentialError(OperatorError):
    """Base class for credential resolution failures."""

    pass


class MissingObjectError(CredentialError):
    """The referenced secret or config map does not exist."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class MissingKeyError(CredentialError):
    """The referenced object exists but does not carry the requested key."""

    def __init__(self, kind: str, namespace: str, name: str, key: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.key = key
        super().__init__(f"key {key!r} not found in {kind} {namespace}/{name}")


class ApplyError(OperatorError):
    """Raised when creating, updating or deleting a child object failed."""

    def __init__(self, kind: str, namespace: str, name: str, cause: BaseException):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.cause = cause
        super().__init__(f"failed to apply {kind} {namespace}/{name}: {cause}")

    @property
    def identity(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @property
    def retryable(self) -> bool:
        return is_retryable(self.cause)


class ReadinessTimeoutError(OperatorError):
    """Raised when a component did not become ready within the allowed time."""

    def __init__(self, component: str, waited: float):
        self.component = component
        self.waited = waited
        super().__init__(f"{component} not ready after {waited:.0f}s")


class InvalidSelectorError(OperatorError, ValueError):
    """A label selector expression uses an operator that does not exist."""

    def __init__(self, key: str, operator: str):
        self.key = key
        self.operator = operator
        super().__init__(f"unknown label selector operator {operator!r} for key {key!r}")


class InvalidValueError(CredentialError):
    """The referenced key exists but its value cannot be decoded."""

    def __init__(self, kind: str, namespace: str, name: str, key: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.key = key
        super().__init__(f"key {key!r} of {kind} {namespace}/{name} is not valid base64 text")
