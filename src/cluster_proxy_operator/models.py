"""Typed views of the ManagedProxyConfiguration custom resource.

The CR arrives from ``CustomObjectsApi`` as a raw dict with camelCase keys.
Models declare those keys as aliases, fill in the CRD defaults and drop
explicit nulls so a ``replicas: null`` behaves like an absent field.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from cluster_proxy_operator.exceptions import ConfigurationError
from cluster_proxy_operator.utils.log_config import setup_logger

logger = setup_logger('configuration-model')

DEFAULT_PROXY_SERVER_NAMESPACE = "open-cluster-management-cluster-proxy"
DEFAULT_IN_CLUSTER_SERVICE_NAME = "proxy-entrypoint"
DEFAULT_ENTRYPOINT_PORT = 8091

CONDITION_PROXY_SERVER_DEPLOYED = "ProxyServerDeployed"
CONDITION_PROXY_SERVER_SECRET_SIGNED = "ProxyServerSecretSigned"
CONDITION_AGENT_SERVER_SECRET_SIGNED = "AgentServerSecretSigned"

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


def is_qualified_name(value: str) -> bool:
    prefix, _, name = value.rpartition("/")
    if "/" in prefix:
        return False
    if prefix and (len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix)):
        return False
    return 0 < len(name) <= 63 and bool(_NAME_RE.match(name))


def is_valid_label_value(value: str) -> bool:
    return value == "" or (len(value) <= 63 and bool(_NAME_RE.match(value)))


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class K8sModel(BaseModel):
    """Base for models parsed from custom resource dicts."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {cls.__name__}: {e}") from e


class EntrypointType(str, Enum):
    HOSTNAME = "Hostname"
    LOAD_BALANCER_SERVICE = "LoadBalancerService"
    PORT_FORWARD = "PortForward"


class AnnotationVar(K8sModel):
    key: str = ""
    value: str = ""


class LoadBalancerServiceEntrypoint(K8sModel):
    name: str = "proxy-agent-entrypoint"
    annotations: List[AnnotationVar] = Field(default_factory=list)

    def valid_annotations(self) -> Optional[Dict[str, str]]:
        """Annotations to put on the LoadBalancer service, skipping invalid ones."""
        if not self.annotations:
            return None
        result = {}
        for var in self.annotations:
            if not is_qualified_name(var.key):
                logger.warning(f"Annotation key {var.key} failed validation, skipping it")
                continue
            if not is_valid_label_value(var.value):
                logger.warning(f"Annotation value of {var.key} failed validation, skipping it")
                continue
            result[var.key] = var.value
        return result


class HostnameEntrypoint(K8sModel):
    value: str = ""


class Entrypoint(K8sModel):
    type: EntrypointType = EntrypointType.PORT_FORWARD
    hostname: Optional[HostnameEntrypoint] = None
    load_balancer_service: Optional[LoadBalancerServiceEntrypoint] = Field(default=None, alias="loadBalancerService")
    port: int = DEFAULT_ENTRYPOINT_PORT

    @field_validator("port", mode="before")
    @classmethod
    def _default_port(cls, value: Any) -> Any:
        return value or DEFAULT_ENTRYPOINT_PORT

    @model_validator(mode="after")
    def _check_type(self) -> 'Entrypoint':
        if self.type == EntrypointType.HOSTNAME and not (self.hostname and self.hostname.value):
            raise ValueError("Entrypoint type Hostname requires hostname.value")
        if self.type == EntrypointType.LOAD_BALANCER_SERVICE and self.load_balancer_service is None:
            self.load_balancer_service = LoadBalancerServiceEntrypoint()
        return self


class NodePlacement(K8sModel):
    node_selector: Dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)


class ProxyServerSpec(K8sModel):
    image: str = ""
    replicas: int = 3
    namespace: str = DEFAULT_PROXY_SERVER_NAMESPACE
    in_cluster_service_name: str = Field(default=DEFAULT_IN_CLUSTER_SERVICE_NAME, alias="inClusterServiceName")
    entrypoint: Entrypoint = Field(default_factory=Entrypoint)
    node_placement: NodePlacement = Field(default_factory=NodePlacement, alias="nodePlacement")
    additional_args: List[str] = Field(default_factory=list, alias="additionalArgs")

    # An empty string means "use the default" in the CRD
    @field_validator("namespace", mode="before")
    @classmethod
    def _default_namespace(cls, value: Any) -> Any:
        return value or DEFAULT_PROXY_SERVER_NAMESPACE

    @field_validator("in_cluster_service_name", mode="before")
    @classmethod
    def _default_service_name(cls, value: Any) -> Any:
        return value or DEFAULT_IN_CLUSTER_SERVICE_NAME


class ProxyAgentSpec(K8sModel):
    image: str = ""
    replicas: int = 1
    image_pull_secrets: List[str] = Field(default_factory=list, alias="imagePullSecrets")


class SecretNames(K8sModel):
    signing_proxy_server_secret_name: str = Field(default="proxy-server", alias="signingProxyServerSecretName")
    signing_agent_server_secret_name: str = Field(default="agent-server", alias="signingAgentServerSecretName")
    signing_proxy_client_secret_name: str = Field(default="proxy-client", alias="signingProxyClientSecretName")


class SelfSignedSpec(K8sModel):
    additional_sans: List[str] = Field(default_factory=list, alias="additionalSANs")


class SignerSpec(K8sModel):
    type: str = "SelfSigned"
    self_signed: SelfSignedSpec = Field(default_factory=SelfSignedSpec, alias="selfSigned")

    @field_validator("type")
    @classmethod
    def _only_self_signed(cls, value: str) -> str:
        if value != "SelfSigned":
            raise ValueError(f"Unsupported signer type {value!r}")
        return value


class DumpSpec(K8sModel):
    secrets: SecretNames = Field(default_factory=SecretNames)


class AuthenticationSpec(K8sModel):
    signer: SignerSpec = Field(default_factory=SignerSpec)
    dump: DumpSpec = Field(default_factory=DumpSpec)

    @property
    def additional_sans(self) -> List[str]:
        return self.signer.self_signed.additional_sans

    @property
    def secrets(self) -> SecretNames:
        return self.dump.secrets


class Condition(K8sModel):
    type: str
    status: bool = False
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = Field(default=None, alias="lastTransitionTime")
    observed_generation: int = Field(default=0, alias="observedGeneration")

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> Any:
        # "Unknown" reads as not satisfied
        if isinstance(value, str):
            return value == "True"
        return value

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'type': self.type,
            'status': 'True' if self.status else 'False',
            'reason': self.reason,
            'message': self.message,
            'observedGeneration': self.observed_generation,
        }
        if self.last_transition_time is not None:
            result['lastTransitionTime'] = format_time(self.last_transition_time)
        return result

    def same_state(self, other: 'Condition') -> bool:
        """Compare two conditions ignoring their transition time."""
        return (self.type, self.status, self.reason, self.message, self.observed_generation) == \
            (other.type, other.status, other.reason, other.message, other.observed_generation)


class ConfigurationStatus(K8sModel):
    conditions: List[Condition] = Field(default_factory=list)
    last_observed_generation: int = Field(default=0, alias="lastObservedGeneration")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conditions': [c.to_dict() for c in self.conditions],
            'lastObservedGeneration': self.last_observed_generation
        }


class ManagedProxyConfiguration(K8sModel):
    name: str
    uid: str = ""
    generation: int = 0
    resource_version: str = Field(default="", alias="resourceVersion")
    proxy_server: ProxyServerSpec = Field(default_factory=ProxyServerSpec, alias="proxyServer")
    proxy_agent: ProxyAgentSpec = Field(default_factory=ProxyAgentSpec, alias="proxyAgent")
    authentication: AuthenticationSpec = Field(default_factory=AuthenticationSpec)
    status: ConfigurationStatus = Field(default_factory=ConfigurationStatus)

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> 'ManagedProxyConfiguration':
        """Build the view from a whole custom resource body."""
        meta = body.get('metadata') or {}
        if not meta.get('name'):
            raise ConfigurationError("Configuration object has no name")
        data = dict(body.get('spec') or {})
        data.update({key: meta.get(key) for key in ('name', 'uid', 'generation', 'resourceVersion')})
        data['status'] = body.get('status')
        return super().from_dict(data)
