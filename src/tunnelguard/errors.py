"""
TunnelGuard Unified Error Taxonomy.

This module provides a centralized error hierarchy for all TunnelGuard components.
All errors include:
- Machine-readable error codes
- Structured details (never key material)
- A fatal flag; the CLI exits 1 for fatal errors and 2 for recoverable ones

Error Code Naming Convention:
- TNG_<COMPONENT>_<SPECIFIC>
- Components: HOST, PLATFORM, PKI, PEER, RENDER, NET, CONFIG, LOCK, STATE

Propagation:
- Invariant violations (CA/server pairing, name uniqueness) never auto-correct
- Collaborator failures after artifacts are durable are logged as warnings
  by the orchestrator and never reach this hierarchy
"""

from typing import Any, Dict, Optional

EXIT_FATAL = 1
EXIT_RECOVERABLE = 2


class TunnelGuardError(Exception):
    """Base exception for all TunnelGuard errors.

    All TunnelGuard errors include:
    - code: Machine-readable error code (e.g., TNG_PKI_IDENTITY_CONFLICT)
    - message: Human-readable description
    - details: Structured metadata (NEVER include private keys)
    - fatal: Whether the invocation must halt
    """

    def __init__(
        self,
        message: str,
        code: str = "TNG_INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        fatal: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.fatal = fatal

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    @property
    def exit_code(self) -> int:
        """Process exit status for the CLI."""
        return EXIT_FATAL if self.fatal else EXIT_RECOVERABLE

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "fatal": self.fatal,
        }


# =============================================================================
# Host Errors (TNG_HOST_*, TNG_PLATFORM_*)
# =============================================================================


class UnsupportedPlatformError(TunnelGuardError):
    """Raised when the OS identifier does not map to a known platform profile."""

    def __init__(self, os_id: Optional[str], kernel_name: Optional[str] = None):
        super().__init__(
            message=(
                f"Unsupported OS '{os_id or kernel_name or 'unknown'}'. Supported: Debian, Ubuntu, "
                "Fedora, CentOS, Rocky, Alma, Oracle, Amazon Linux, Arch, FreeBSD."
            ),
            code="TNG_PLATFORM_UNSUPPORTED",
            details={"os_id": os_id, "kernel_name": kernel_name},
        )


class PrivilegeRequiredError(TunnelGuardError):
    """Raised when the process lacks root privileges."""

    def __init__(self, euid: int):
        super().__init__(
            message="This command must be run as root.",
            code="TNG_HOST_PRIVILEGE_REQUIRED",
            details={"euid": euid},
        )


class CapabilityMissingError(TunnelGuardError):
    """Raised when a required kernel capability (e.g. the TUN device) is absent."""

    def __init__(self, capability: str, path: Optional[str] = None):
        super().__init__(
            message=f"Required capability not available: {capability}",
            code="TNG_HOST_CAPABILITY_MISSING",
            details={"capability": capability, "path": path},
        )


class PackageInstallError(TunnelGuardError):
    """Raised when the package manager fails to install dependencies."""

    def __init__(self, command: str, returncode: int):
        super().__init__(
            message=f"Package installation failed: '{command}' exited with {returncode}",
            code="TNG_HOST_PACKAGE_INSTALL_FAILED",
            details={"command": command, "returncode": returncode},
        )


class ResolverSetupError(TunnelGuardError):
    """Raised when the local recursive resolver cannot be configured and the policy is fatal."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Recursive resolver setup failed: {reason}",
            code="TNG_HOST_RESOLVER_FAILED",
            details={"reason": reason},
        )


# =============================================================================
# PKI Errors (TNG_PKI_*, TNG_PEER_*)
# =============================================================================


class InvalidNameError(TunnelGuardError):
    """Raised when a peer name fails the naming pattern. Recoverable by re-prompting."""

    def __init__(self, name: str, pattern: str, reason: Optional[str] = None):
        super().__init__(
            message=f"Invalid peer name {name!r}: {reason or 'must match ' + pattern}",
            code="TNG_PEER_INVALID_NAME",
            details={"name": name, "pattern": pattern},
            fatal=False,
        )


class DuplicatePeerError(TunnelGuardError):
    """Raised when a peer name has already been issued under the current authority."""

    def __init__(self, name: str):
        super().__init__(
            message=f"Peer '{name}' already exists under this certificate authority",
            code="TNG_PEER_DUPLICATE",
            details={"name": name},
        )


class UnknownPeerError(TunnelGuardError):
    """Raised when a revoke/inspect target was never issued."""

    def __init__(self, name: str, reason: str = "not issued"):
        super().__init__(
            message=f"Unknown peer '{name}': {reason}",
            code="TNG_PEER_UNKNOWN",
            details={"name": name, "reason": reason},
            fatal=False,
        )


class IdentityConflictError(TunnelGuardError):
    """
    Raised when on-disk PKI state contradicts the CA/server invariants.

    Non-retryable: requires manual intervention. Silently re-signing would
    invalidate every peer certificate already handed out.
    """

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Identity conflict: {reason}. Manual intervention required.",
            code="TNG_PKI_IDENTITY_CONFLICT",
            details=details or {},
        )


# =============================================================================
# Rendering Errors (TNG_RENDER_*)
# =============================================================================


class ArtifactRenderError(TunnelGuardError):
    """Raised when a required source block cannot be located during bundle assembly."""

    def __init__(self, artifact: str, reason: str):
        super().__init__(
            message=f"Cannot render {artifact}: {reason}",
            code="TNG_RENDER_MISSING_ARTIFACT",
            details={"artifact": artifact},
        )


# Name used by the provisioning contract
MissingArtifactError = ArtifactRenderError


class PeerProvisioningError(TunnelGuardError):
    """Raised when ADD_PEER fails; names the artifact that could not be produced."""

    def __init__(self, peer_name: str, artifact: str, cause: Exception):
        super().__init__(
            message=f"Failed to produce {artifact} for peer '{peer_name}': {cause}",
            code="TNG_PEER_PROVISIONING_FAILED",
            details={"peer": peer_name, "artifact": artifact, "cause": getattr(cause, "code", type(cause).__name__)},
        )
        self.peer_name = peer_name
        self.artifact = artifact


# =============================================================================
# Network Errors (TNG_NET_*)
# =============================================================================


class NetworkDiscoveryError(TunnelGuardError):
    """Raised when no public-endpoint discovery service returns an address."""

    def __init__(self, endpoints: list):
        super().__init__(
            message="Could not resolve public IP address from any discovery endpoint",
            code="TNG_NET_DISCOVERY_FAILED",
            details={"endpoints_tried": len(endpoints)},
        )


# =============================================================================
# Configuration / Concurrency / State Errors (TNG_CONFIG_*, TNG_LOCK_*, TNG_STATE_*)
# =============================================================================


class ConfigValidationError(TunnelGuardError):
    """Raised when provisioning configuration validation fails."""

    def __init__(self, config_key: str, reason: str):
        super().__init__(
            message=f"Invalid configuration for {config_key}: {reason}",
            code="TNG_CONFIG_VALIDATION_FAILED",
            details={"config_key": config_key},
        )


class ProvisioningLockedError(TunnelGuardError):
    """Raised when another provisioning session holds the lock."""

    def __init__(self, lock_path: str, owner_pid: Optional[int] = None):
        super().__init__(
            message=f"Another provisioning session is running (lock: {lock_path})",
            code="TNG_LOCK_HELD",
            details={"lock_path": lock_path, "owner_pid": owner_pid},
        )


class NotInstalledError(TunnelGuardError):
    """Raised when a peer operation runs before the server is installed."""

    def __init__(self, state: str):
        super().__init__(
            message=f"Server is not installed (state: {state}); run 'tunnelguard provision' first",
            code="TNG_STATE_NOT_INSTALLED",
            details={"state": state},
        )


# =============================================================================
# Error Code Registry (for documentation and validation)
# =============================================================================

ERROR_CODES = {
    "TNG_PLATFORM_UNSUPPORTED": "Unresolvable OS identifier",
    "TNG_HOST_PRIVILEGE_REQUIRED": "Root privileges required",
    "TNG_HOST_CAPABILITY_MISSING": "Kernel/network capability missing",
    "TNG_HOST_PACKAGE_INSTALL_FAILED": "Package manager invocation failed",
    "TNG_HOST_RESOLVER_FAILED": "Recursive resolver setup failed",
    "TNG_PEER_INVALID_NAME": "Peer name fails naming pattern",
    "TNG_PEER_DUPLICATE": "Peer name already issued",
    "TNG_PEER_UNKNOWN": "Peer not issued",
    "TNG_PEER_PROVISIONING_FAILED": "Peer artifact could not be produced",
    "TNG_PKI_IDENTITY_CONFLICT": "PKI state inconsistent with invariants",
    "TNG_RENDER_MISSING_ARTIFACT": "Required source block missing",
    "TNG_NET_DISCOVERY_FAILED": "No reachable public endpoint service",
    "TNG_CONFIG_VALIDATION_FAILED": "Configuration validation failed",
    "TNG_LOCK_HELD": "Provisioning lock held by another session",
    "TNG_STATE_NOT_INSTALLED": "Server not installed",
    "TNG_INTERNAL_ERROR": "Internal error",
}


def validate_error_code(code: str) -> bool:
    """Validate that an error code is registered."""
    return code in ERROR_CODES


__all__ = [
    "TunnelGuardError",
    "UnsupportedPlatformError",
    "PrivilegeRequiredError",
    "CapabilityMissingError",
    "PackageInstallError",
    "ResolverSetupError",
    "InvalidNameError",
    "DuplicatePeerError",
    "UnknownPeerError",
    "IdentityConflictError",
    "ArtifactRenderError",
    "MissingArtifactError",
    "PeerProvisioningError",
    "NetworkDiscoveryError",
    "ConfigValidationError",
    "ProvisioningLockedError",
    "NotInstalledError",
    "EXIT_FATAL",
    "EXIT_RECOVERABLE",
    "ERROR_CODES",
    "validate_error_code",
]
