"""Error types raised by CA rotation operations."""


class CARotationError(Exception):
    """Base class for all CA rotation errors."""


class NotFoundError(CARotationError):
    """Credential record does not exist and must be seeded."""


class ConflictError(CARotationError):
    """Record changed since it was read; re-read and re-apply."""


class CryptoError(CARotationError):
    """Key generation or certificate signing failed."""


class EncodingError(CARotationError):
    """Key material could not be normalized to PKCS8."""


class GateTimeoutError(CARotationError):
    """Controller did not report the requested reconciliation state in time."""


class RolloutTimeoutError(CARotationError):
    """Component group did not finish rolling before the timeout."""


class VerificationTimeoutError(CARotationError):
    """Not all probe messages were acknowledged before the timeout."""

    def __init__(self, message: str, acknowledged: int = 0) -> None:
        super().__init__(message)
        self.acknowledged = acknowledged


class RotationCancelled(CARotationError):
    """Rotation was cancelled between poll iterations."""


class RotationError(CARotationError):
    """Rotation failed in a specific phase.

    The originating error is chained as ``__cause__``. The persisted state is
    left as it was after the last completed phase so the rotation can be
    resumed from there.
    """

    def __init__(self, step: str, last_phase: str, message: str) -> None:
        super().__init__(f"Rotation failed during {step} (last completed phase {last_phase}): {message}")
        self.step = step
        self.last_phase = last_phase
