"""
WeightVault Exceptions
======================

Error taxonomy shared by the engine and the storage service.
"""


class WeightVaultError(Exception):
    """Base exception for WeightVault."""
    pass


class CapabilityUnavailable(WeightVaultError):
    """Raised when the parallel backend is not usable in this process."""
    pass


class BackendExecutionFailure(WeightVaultError):
    """Raised when a backend fails while processing a compression request."""

    def __init__(self, message: str, backend: str = "parallel"):
        super().__init__(message)
        self.backend = backend


class LayerReconstructionError(WeightVaultError):
    """Raised when a layer cannot be rebuilt from its kind, config and weights."""
    pass


class CorruptArtifactError(WeightVaultError):
    """Raised when a stored artifact, blob or record cannot be read."""
    pass


class TopologyMismatchError(WeightVaultError):
    """Raised when two models do not share the same tensor layout."""
    pass


class ValidationError(WeightVaultError):
    """Raised when an imported document is structurally invalid."""

    def __init__(self, message: str, details: list = None):
        super().__init__(message)
        self.details = details or []
