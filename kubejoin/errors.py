"""Exception hierarchy for kubejoin.

Every error carries the phase it was raised in so the CLI can print a single
line telling the operator where the run stopped.
"""
from typing import List, Optional


class KubejoinError(Exception):
    """Base class for all kubejoin failures."""

    phase = "unknown"

    def __init__(self, message: str, node: Optional[str] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.node = node
        if phase:
            self.phase = phase


class InvalidNodeNameError(KubejoinError, ValueError):
    """Raised when a node name is not a valid DNS subdomain token."""

    phase = "input"


class DiscoveryError(KubejoinError):
    """Raised when a required cluster fact cannot be discovered."""

    phase = "discovery"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class KeyGenError(KubejoinError):
    """Raised when the node key pair cannot be generated."""

    phase = "credentials"


class CSRBuildError(KubejoinError):
    """Raised when the certificate signing request cannot be built."""

    phase = "credentials"


class SigningError(KubejoinError):
    """Raised when the cluster API rejects a signing request operation."""

    phase = "signing"


class SigningDeniedError(SigningError):
    """Raised when the signing request was denied or failed by the signer."""


class SigningTimeoutError(SigningError):
    """Raised when no certificate was issued within the poll bound."""


class BundleError(KubejoinError):
    """Raised when an enrollment bundle is incomplete or malformed."""

    phase = "bundle"


class ProvisioningError(KubejoinError):
    """Base class for node-side step failures."""

    phase = "provision"


class PreflightError(ProvisioningError):
    phase = "preflight"


class ArtifactInstallError(ProvisioningError):
    phase = "install"


class CredentialWriteError(ProvisioningError):
    phase = "credentials"


class ConfigRenderError(ProvisioningError):
    phase = "configuration"


class ActivationError(ProvisioningError):
    phase = "activation"


class CommandError(KubejoinError):
    """Raised when a host command exits non-zero."""

    phase = "command"

    def __init__(self, args: List[str], returncode: int, stderr: str = ""):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"`{' '.join(args)}` exited with {returncode}: {detail}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
