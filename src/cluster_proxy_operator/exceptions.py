"""Exceptions raised by the cluster-proxy operator."""


class ProxyOperatorError(Exception):
    """Base exception for cluster-proxy operator errors."""


class ConfigurationError(ProxyOperatorError):
    """Raised when operator settings or a configuration object are invalid."""


class ConfigurationNotFoundError(ProxyOperatorError):
    """Raised when the ManagedProxyConfiguration being reconciled is gone."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"ManagedProxyConfiguration {name} not found")


class SigningError(ProxyOperatorError):
    """Raised when the CA cannot sign a certificate."""


class CACorruptedError(SigningError):
    """Raised when the stored CA cannot be parsed.

    The CA is never regenerated automatically: peers already trusting it
    would lose trust. An operator has to repair or delete the secret.
    """

    def __init__(self, namespace: str, name: str, reason: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"CA secret {namespace}/{name} is corrupted: {reason}")


class EntrypointNotReadyError(ProxyOperatorError):
    """Raised when the entrypoint address is not provisioned yet."""


class RotationError(ProxyOperatorError):
    """Raised when a certificate rotation target fails."""

    def __init__(self, target: str, reason: str):
        self.target = target
        super().__init__(f"Failed to rotate {target} cert: {reason}")


class ResourceApplyError(ProxyOperatorError):
    """Raised when a resource cannot be created or updated."""

    def __init__(self, action: str, kind: str, namespace: str, name: str, reason: str):
        self.action = action
        self.kind = kind
        super().__init__(
            f"Failed to {action} resource kind: {kind}, namespace: {namespace}, name: {name}: {reason}"
        )
