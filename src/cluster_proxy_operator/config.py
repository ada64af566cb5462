from kubernetes import client, config
import kubernetes
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any

from cluster_proxy_operator.exceptions import ConfigurationError

@dataclass(frozen=True)
class APIConfig:
    PROXY_GROUP: str = "proxy.open-cluster-management.io"
    PROXY_VERSION: str = "v1alpha1"
    CONFIGURATION_PLURAL: str = "managedproxyconfigurations"
    CONFIGURATION_KIND: str = "ManagedProxyConfiguration"

    ANNOTATION_GENERATION: str = "proxy.open-cluster-management.io/configuration-generation"
    ANNOTATION_NEXT_SERIAL: str = "proxy.open-cluster-management.io/next-serial"
    LABEL_COMPONENT_NAME: str = "proxy.open-cluster-management.io/component-name"

    COMPONENT_PROXY_SERVER: str = "proxy-server"
    ADDON_NAME: str = "cluster-proxy"
    CA_COMMON_NAME: str = "open-cluster-management.io/cluster-proxy"
    CA_DUMP_SECRET_NAME: str = "proxy-server-ca"
    AGENT_CLIENT_SECRET_NAME: str = "cluster-proxy-open-cluster-management.io-proxy-agent-signer-client-cert"
    PORT_FORWARD_ROLE_NAME: str = "cluster-proxy-addon-agent:portforward"
    SUBJECT_GROUP_CLUSTER_PROXY: str = "open-cluster-management:cluster-proxy"
    PROXY_AGENT_SIGNER_NAME: str = "open-cluster-management.io/proxy-agent-signer"

    PROXY_SERVER_PORT: int = 8090
    AGENT_SERVER_PORT: int = 8091

    @property
    def api_version(self) -> str:
        return f"{self.PROXY_GROUP}/{self.PROXY_VERSION}"


class OperatorSettings(BaseSettings):
    """Runtime settings of the operator, read once from the environment at startup."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # CA secret
    signer_secret_namespace: str = "default"
    signer_secret_name: str = "cluster-proxy-signer"

    # Leaf certificates
    cert_validity_days: int = Field(default=180, gt=0)
    cert_renew_before_days: int = Field(default=36, ge=0)

    # Proxy server resources
    proxy_server_image_pull_policy: str = "IfNotPresent"
    max_conflict_retries: int = Field(default=5, ge=1, description="Update attempts before giving up")
    conflict_backoff_seconds: float = Field(default=0.2, ge=0)

    # Requeue timing
    resync_interval_seconds: float = Field(default=36000.0, gt=0)
    entrypoint_retry_delay_seconds: float = Field(default=10.0, ge=0)

    # Detected from the API server, not configured
    supports_v1_csr: bool = True

    @model_validator(mode="after")
    def _check_renew_window(self) -> 'OperatorSettings':
        if self.cert_renew_before_days >= self.cert_validity_days:
            raise ValueError("renew-before window must be shorter than the certificate validity")
        return self

    @property
    def cert_validity(self) -> timedelta:
        return timedelta(days=self.cert_validity_days)

    @property
    def renew_before(self) -> timedelta:
        return timedelta(days=self.cert_renew_before_days)

    @classmethod
    def from_env(cls, supports_v1_csr: bool = True) -> 'OperatorSettings':
        try:
            return cls(supports_v1_csr=supports_v1_csr)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid operator settings: {e}") from e


class Config:
    api = APIConfig()

    @staticmethod
    def initialize_kubernetes() -> Dict[str, Any]:
        """Initialize Kubernetes client configuration."""
        try:
            config.load_incluster_config()
        except kubernetes.config.config_exception.ConfigException:
            config.load_kube_config()

        return {
            'core_v1_api': client.CoreV1Api(),
            'apps_v1_api': client.AppsV1Api(),
            'rbac_v1_api': client.RbacAuthorizationV1Api(),
            'custom_objects_api': client.CustomObjectsApi(),
            'apis_api': client.ApisApi()
        }
