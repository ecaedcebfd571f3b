"""Exception taxonomy for flarewatcher.

Providers and stores translate transport failures (``requests`` exceptions,
malformed JSON, unreadable files) into these types so the reconciliation loop
can decide what is transient, what is a configuration problem, and what must
disable a monitored record.
"""

from __future__ import annotations


class FlarewatcherError(Exception):
    """Base class for all flarewatcher errors."""


class ConfigError(FlarewatcherError):
    """The YAML config file or environment is unusable."""


class IpResolutionFailed(FlarewatcherError):
    """The public IP service could not be reached or returned garbage.

    Transient: the loop retries on the next tick.
    """


class CredentialMissing(FlarewatcherError):
    """No usable API token exists for the requested operator/token pair."""


class ProviderError(FlarewatcherError):
    """The DNS provider rejected a read or the call failed in transit."""


class RecordNotFound(ProviderError):
    """The DNS provider has no record with the requested id."""


class RollbackUnavailable(FlarewatcherError):
    """The ledger entry cannot be reversed (no snapshot, or not owned)."""


class PropagationCheckFailed(FlarewatcherError):
    """The public resolver could not be queried. Informational only."""


class SettingsValidationError(FlarewatcherError):
    """A settings payload violates a field constraint."""


class LedgerWriteError(FlarewatcherError):
    """An update ledger entry could not be persisted."""


class AlertDeliveryError(FlarewatcherError):
    """A test alert could not be delivered. Regular alerts never raise."""
