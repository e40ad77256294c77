"""Application-wide exception hierarchy for the key relay.

All custom exceptions subclass ``KeyRelayError``, enabling consistent error
handling and structured logging across the application.

Hierarchy::

    KeyRelayError
    ├── StorageError
    │   └── StorageConflictError
    ├── ProvisioningError
    ├── CredentialExhaustedError   (reason: "no_credentials" | "all_depleted")
    └── UpstreamTransportError

Upstream responses with a status other than the exhaustion code are never
turned into exceptions; they are handed back to the caller unchanged.
"""

from __future__ import annotations


class KeyRelayError(Exception):
    """Base class for all key relay exceptions."""


# ---------------------------------------------------------------------------
# Storage exceptions
# ---------------------------------------------------------------------------


class StorageError(KeyRelayError):
    """Raised when the credential store cannot complete a read or write.

    Covers transport failures, authentication failures and unexpected
    payloads.  A missing key is *not* an error; ``get`` returns ``None``.

    Args:
        message: Human-readable description of the failure.
        key: Logical store key involved, if any.
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class StorageConflictError(StorageError):
    """Raised when a write carried a stale version marker.

    The write was rejected by the backing store and may be retried after
    re-reading the current marker.
    """


# ---------------------------------------------------------------------------
# Provisioning exceptions
# ---------------------------------------------------------------------------


class ProvisioningError(KeyRelayError):
    """Raised when the Provisioner did not deliver a credential.

    Timeouts, non-zero exits of a provisioning command, empty output and a
    missing provisioner configuration all surface as this error.
    """


# ---------------------------------------------------------------------------
# Dispatch exceptions
# ---------------------------------------------------------------------------


class CredentialExhaustedError(KeyRelayError):
    """Raised when no active credential could serve a request.

    Converted to a ``503 Service Unavailable`` response at the HTTP
    boundary; callers of the relay never see it as an internal error.

    Args:
        reason: ``"no_credentials"`` when the pool had no active slot at all,
            ``"all_depleted"`` when every active slot was tried and failed.
    """

    NO_CREDENTIALS = "no_credentials"
    ALL_DEPLETED = "all_depleted"

    def __init__(self, reason: str) -> None:
        if reason == self.NO_CREDENTIALS:
            message = "No API keys available"
        else:
            message = "All API keys depleted"
        super().__init__(message)
        self.reason = reason


class UpstreamTransportError(KeyRelayError):
    """Raised when the upstream call for one slot failed at the network level.

    The credential is not deprecated; the dispatcher moves on to the next
    slot.

    Args:
        message: Description of the transport failure.
        slot_index: Pool position whose credential was being used.
    """

    def __init__(self, message: str, slot_index: int) -> None:
        super().__init__(message)
        self.slot_index = slot_index
