"""Cross-cutting primitives shared by every provisioning component."""

from tigspine.core.errors import (
    CommandError,
    ConfigurationError,
    ConvergenceError,
    ErrorCategory,
    ErrorContext,
    MaterializeError,
    RuntimeInstallError,
    SecretGenerationError,
    StepAbortedError,
    TigError,
    UnsupportedPlatformError,
)
from tigspine.core.secrets import generate_secret, mask_secret

__all__ = [
    "CommandError",
    "ConfigurationError",
    "ConvergenceError",
    "ErrorCategory",
    "ErrorContext",
    "MaterializeError",
    "RuntimeInstallError",
    "SecretGenerationError",
    "StepAbortedError",
    "TigError",
    "UnsupportedPlatformError",
    "generate_secret",
    "mask_secret",
]
