"""Error taxonomy shared by every reconciler.

Every failure that crosses a component boundary is one of the classes below.
Raw boto3, Kubernetes and Helm failures are converted by `classify` so callers
only ever need to handle `ConvergeError` subclasses.
"""

from __future__ import annotations

import subprocess
import typing

import botocore.exceptions
import kubernetes.client.exceptions
import kubernetes.config
import urllib3.exceptions

THROTTLING_CODES = frozenset(
    [
        "EC2ThrottledException",
        "InternalFailure",
        "InternalError",
        "PriorRequestNotComplete",
        "RequestLimitExceeded",
        "RequestThrottled",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServerException",
        "ServiceFailure",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    ]
)

PERMISSION_CODES = frozenset(
    [
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
    ]
)

CONFLICT_CODES = frozenset(
    [
        "ConcurrentModification",
        "EntityAlreadyExists",
        "ResourceInUseException",
        "ResourceLimitExceeded",
    ]
)

TRANSIENT_HTTP_STATUSES = frozenset([429, 500, 502, 503, 504])

HELM_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "the server is currently unable",
    "timed out waiting for the condition",
    "context deadline exceeded",
    "too many requests",
)
HELM_PERMISSION_MARKERS = ("forbidden", "unauthorized", "you must be logged in")
HELM_CONFLICT_MARKERS = ("another operation (install/upgrade/rollback) is in progress",)


class ConvergeError(Exception):
    exit_code: typing.ClassVar[int] = 1
    fatal: typing.ClassVar[bool] = True

    def __init__(self, msg: str, *, resource: str | None = None):
        super().__init__(msg)
        self.resource = resource


class TransientError(ConvergeError):
    """Network or throttling failure; retried with backoff until attempts run out."""

    exit_code = 5


class ConflictError(ConvergeError):
    """Live state diverges from desired state in a way that is not auto-resolved."""

    exit_code = 3

    def __init__(self, msg: str, *, resource: str | None = None, fields: typing.Sequence[str] = ()):
        super().__init__(msg, resource=resource)
        self.fields = tuple(fields)


class ConfigurationMismatchError(ConflictError):
    """Region or VPC of the referenced resources does not match the ClusterSpec."""


class AccessDeniedError(ConvergeError):
    """Insufficient IAM or RBAC permissions. Never retried."""

    exit_code = 4


class SpecValidationError(ConvergeError, ValueError):
    exit_code = 2


class ReconcileTimeoutError(ConvergeError):
    """A bounded wait elapsed; whatever converged so far is left in place."""

    exit_code = 6


class ControllerNotReadyError(ReconcileTimeoutError):
    def __init__(self, msg: str, *, state: typing.Any = None, resource: str | None = None):
        super().__init__(msg, resource=resource)
        self.state = state


class CancelledError(ConvergeError):
    exit_code = 130


def aws_error_code(e: botocore.exceptions.ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def is_aws_not_found(e: Exception) -> bool:
    if not isinstance(e, botocore.exceptions.ClientError):
        return False

    return aws_error_code(e) in ("NoSuchEntity", "NoSuchEntityException", "ResourceNotFoundException", "NotFound")


def classify(e: BaseException, resource: str | None = None) -> ConvergeError:
    """Map a raw client exception onto the error taxonomy."""
    if isinstance(e, ConvergeError):
        return e

    if isinstance(e, botocore.exceptions.ClientError):
        code = aws_error_code(e)
        msg = str(e)
        if code in THROTTLING_CODES:
            return TransientError(msg, resource=resource)
        if code in PERMISSION_CODES:
            return AccessDeniedError(msg, resource=resource)
        if code in CONFLICT_CODES:
            return ConflictError(msg, resource=resource)
        if code.startswith("InvalidSubnetID") or code.startswith("InvalidVpcID"):
            return ConfigurationMismatchError(msg, resource=resource)
        if code in ("InvalidParameterException", "InvalidParameterValue", "ValidationError", "MalformedPolicyDocument"):
            return SpecValidationError(msg, resource=resource)
        return ConvergeError(msg, resource=resource)

    if isinstance(
        e,
        botocore.exceptions.EndpointConnectionError
        | botocore.exceptions.ConnectionClosedError
        | botocore.exceptions.ReadTimeoutError
        | botocore.exceptions.ConnectTimeoutError,
    ):
        return TransientError(str(e), resource=resource)

    if isinstance(e, botocore.exceptions.NoCredentialsError | botocore.exceptions.PartialCredentialsError):
        return AccessDeniedError(f"failed to locate AWS credentials: {e}", resource=resource)

    if isinstance(e, kubernetes.client.exceptions.ApiException):
        msg = f"kubernetes API returned {e.status} {e.reason}: {e.body}"
        if e.status in TRANSIENT_HTTP_STATUSES:
            return TransientError(msg, resource=resource)
        if e.status in (401, 403):
            return AccessDeniedError(msg, resource=resource)
        if e.status == 409:
            return ConflictError(msg, resource=resource)
        if e.status in (400, 422):
            return SpecValidationError(msg, resource=resource)
        return ConvergeError(msg, resource=resource)

    if isinstance(e, urllib3.exceptions.HTTPError):
        return TransientError(f"kubernetes API unreachable: {e}", resource=resource)

    if isinstance(e, subprocess.CalledProcessError):
        output = (e.stderr or e.stdout or "").strip()
        lowered = output.lower()
        msg = f"{' '.join(str(a) for a in e.cmd)} exited {e.returncode}: {output}"
        if any(marker in lowered for marker in HELM_CONFLICT_MARKERS):
            return ConflictError(msg, resource=resource)
        if any(marker in lowered for marker in HELM_PERMISSION_MARKERS):
            return AccessDeniedError(msg, resource=resource)
        if any(marker in lowered for marker in HELM_TRANSIENT_MARKERS):
            return TransientError(msg, resource=resource)
        return ConvergeError(msg, resource=resource)

    if isinstance(e, subprocess.TimeoutExpired):
        return TransientError(f"{e.cmd} timed out after {e.timeout}s", resource=resource)

    if isinstance(e, kubernetes.config.ConfigException):
        return ConfigurationMismatchError(f"invalid kubeconfig: {e}", resource=resource)

    if isinstance(e, ValueError):
        return SpecValidationError(str(e), resource=resource)

    return ConvergeError(f"{e.__class__.__name__}: {e}", resource=resource)
