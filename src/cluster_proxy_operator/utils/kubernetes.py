from kubernetes import client
from kubernetes.client.rest import ApiException
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional
import base64
import json


@dataclass(frozen=True)
class ResourceKind:
    """How to reach one Kubernetes kind through the typed API clients."""
    kind: str
    api_version: str
    api: str
    suffix: str
    namespaced: bool = True


RESOURCE_KINDS = {
    kind.kind: kind for kind in (
        ResourceKind('Namespace', 'v1', 'core_v1_api', 'namespace', namespaced=False),
        ResourceKind('ServiceAccount', 'v1', 'core_v1_api', 'namespaced_service_account'),
        ResourceKind('Service', 'v1', 'core_v1_api', 'namespaced_service'),
        ResourceKind('Secret', 'v1', 'core_v1_api', 'namespaced_secret'),
        ResourceKind('Deployment', 'apps/v1', 'apps_v1_api', 'namespaced_deployment'),
        ResourceKind('Role', 'rbac.authorization.k8s.io/v1', 'rbac_v1_api', 'namespaced_role'),
        ResourceKind('RoleBinding', 'rbac.authorization.k8s.io/v1', 'rbac_v1_api', 'namespaced_role_binding'),
    )
}


@lru_cache(maxsize=1)
def _serializer() -> client.ApiClient:
    return client.ApiClient()


class KubernetesUtils:
    @staticmethod
    def is_not_found(e: ApiException) -> bool:
        return e.status == 404

    @staticmethod
    def status_reason(e: ApiException) -> str:
        """The machine-readable reason of a Status body, if the server sent one."""
        try:
            return json.loads(e.body or '{}').get('reason', '')
        except (TypeError, ValueError, AttributeError):
            return ''

    @staticmethod
    def is_already_exists(e: ApiException) -> bool:
        # both AlreadyExists and Conflict come back as 409
        return e.status == 409 and KubernetesUtils.status_reason(e) != 'Conflict'

    @staticmethod
    def is_conflict(e: ApiException) -> bool:
        return e.status == 409 and KubernetesUtils.status_reason(e) != 'AlreadyExists'

    @staticmethod
    def as_dict(obj: Any) -> Optional[Dict[str, Any]]:
        """Convert a typed client model into its camelCase manifest form."""
        if obj is None:
            return None
        return _serializer().sanitize_for_serialization(obj)

    @staticmethod
    def annotations(obj: Dict[str, Any]) -> Dict[str, str]:
        return (obj.get('metadata') or {}).get('annotations') or {}

    @staticmethod
    def encode_data(data: Dict[str, bytes]) -> Dict[str, str]:
        return {key: base64.b64encode(value).decode('utf-8') for key, value in data.items()}

    @staticmethod
    def decode_data(secret: Dict[str, Any], key: str) -> Optional[bytes]:
        value = (secret.get('data') or {}).get(key)
        if not value:
            return None
        return base64.b64decode(value)

    @staticmethod
    def supports_v1_csr(apis_api) -> bool:
        """Check whether the API server serves certificates.k8s.io/v1."""
        groups = apis_api.get_api_versions().groups or []
        for group in groups:
            if group.name == 'certificates.k8s.io':
                return any(v.version == 'v1' for v in group.versions or [])
        return False


class ResourceClient:
    """Generic get/create/replace over the typed API clients, keyed by kind."""

    def __init__(self, clients: Dict[str, Any]):
        self.clients = clients

    @staticmethod
    def kind_of(resource: Dict[str, Any]) -> ResourceKind:
        try:
            return RESOURCE_KINDS[resource['kind']]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {resource.get('kind')}")

    def _call(self, kind: ResourceKind, verb: str):
        return getattr(self.clients[kind.api], f"{verb}_{kind.suffix}")

    def get(self, kind: ResourceKind, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read a resource, returning None when it does not exist."""
        read = self._call(kind, 'read')
        try:
            obj = read(name, namespace) if kind.namespaced else read(name)
        except ApiException as e:
            if KubernetesUtils.is_not_found(e):
                return None
            raise
        return KubernetesUtils.as_dict(obj)

    def create(self, kind: ResourceKind, resource: Dict[str, Any]) -> Dict[str, Any]:
        create = self._call(kind, 'create')
        namespace = resource['metadata'].get('namespace')
        obj = create(namespace, resource) if kind.namespaced else create(resource)
        return KubernetesUtils.as_dict(obj)

    def replace(self, kind: ResourceKind, resource: Dict[str, Any]) -> Dict[str, Any]:
        replace = self._call(kind, 'replace')
        name = resource['metadata']['name']
        namespace = resource['metadata'].get('namespace')
        obj = replace(name, namespace, resource) if kind.namespaced else replace(name, resource)
        return KubernetesUtils.as_dict(obj)
