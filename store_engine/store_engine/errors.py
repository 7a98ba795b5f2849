"""Error taxonomy shared by the tenancy and billing layers.

Each error states whether a caller may retry it:

* ``UnknownTenant`` -- registry miss or inactive store.  Not retried.
* ``CredentialError`` -- stored credential cannot be decrypted.  Fatal,
  needs operator action, never retried.
* ``ProvisioningError`` -- tenant database unreachable after the bounded
  retry budget.  Transient.
* ``InsufficientCredits`` -- business condition, not a fault.
* ``DuplicateCharge`` -- idempotency collision.  Treated as success by the
  ledger and never surfaced to callers.
* ``JobAlreadyRunning`` -- another trigger holds the billing job claim.
"""

from __future__ import annotations


class StoreEngineError(Exception):
    """Base class for all store engine errors."""


class UnknownTenant(StoreEngineError):
    """The store does not exist, is inactive, or has no credential."""

    def __init__(self, identifier: str, reason: str = "not found") -> None:
        super().__init__(f"Unknown tenant {identifier!r}: {reason}")
        self.identifier = identifier
        self.reason = reason


class CredentialError(StoreEngineError):
    """The stored credential failed integrity verification."""

    def __init__(self, store_id: str, message: str = "credential failed integrity check") -> None:
        super().__init__(f"Credential error for store {store_id!r}: {message}")
        self.store_id = store_id


class ProvisioningError(StoreEngineError):
    """The tenant database could not be reached within the retry budget."""

    def __init__(self, store_id: str, attempts: int, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Could not connect to database for store {store_id!r} after {attempts} attempt(s){detail}")
        self.store_id = store_id
        self.attempts = attempts


class InsufficientCredits(StoreEngineError):
    """The store balance is lower than the requested debit."""

    def __init__(self, store_id: str, balance: int, required: int) -> None:
        super().__init__(f"Store {store_id!r} has {balance} credit(s), {required} required")
        self.store_id = store_id
        self.balance = balance
        self.required = required


class DuplicateCharge(StoreEngineError):
    """A usage record with the same idempotency key already exists."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Duplicate charge for idempotency key {idempotency_key!r}")
        self.idempotency_key = idempotency_key


class JobAlreadyRunning(StoreEngineError):
    """The billing job is claimed by another trigger."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Billing job {kind!r} is already running")
        self.kind = kind
