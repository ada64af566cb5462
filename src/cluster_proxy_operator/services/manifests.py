"""Desired hub-side resources for the proxy server."""
from typing import Any, Dict, List

from cluster_proxy_operator.config import Config
from cluster_proxy_operator.models import EntrypointType, ManagedProxyConfiguration
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils


def owner_reference(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    return {
        'apiVersion': Config.api.api_version,
        'kind': Config.api.CONFIGURATION_KIND,
        'name': cfg.name,
        'uid': cfg.uid,
        'blockOwnerDeletion': True
    }


def _metadata(cfg: ManagedProxyConfiguration, name: str) -> Dict[str, Any]:
    return {
        'name': name,
        'namespace': cfg.proxy_server.namespace,
        'ownerReferences': [owner_reference(cfg)]
    }


def _server_selector() -> Dict[str, str]:
    return {Config.api.LABEL_COMPONENT_NAME: Config.api.COMPONENT_PROXY_SERVER}


def _server_ports() -> List[Dict[str, Any]]:
    return [
        {'name': 'proxy-server', 'port': Config.api.PROXY_SERVER_PORT},
        {'name': 'agent-server', 'port': Config.api.AGENT_SERVER_PORT}
    ]


def new_namespace(name: str) -> Dict[str, Any]:
    return {'apiVersion': 'v1', 'kind': 'Namespace', 'metadata': {'name': name}}


def new_service_account(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    return {
        'apiVersion': 'v1',
        'kind': 'ServiceAccount',
        'metadata': _metadata(cfg, Config.api.ADDON_NAME)
    }


def new_proxy_secret(cfg: ManagedProxyConfiguration, ca_data: bytes) -> Dict[str, Any]:
    """CA certificate dump mounted by the proxy server. Never carries the CA key."""
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': _metadata(cfg, Config.api.CA_DUMP_SECRET_NAME),
        'type': 'Opaque',
        'data': KubernetesUtils.encode_data({'ca.crt': ca_data})
    }


def new_proxy_service(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': _metadata(cfg, cfg.proxy_server.in_cluster_service_name),
        'spec': {
            'selector': _server_selector(),
            'type': 'ClusterIP',
            'ports': _server_ports()
        }
    }


def new_load_balancer_service(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    lb = cfg.proxy_server.entrypoint.load_balancer_service
    metadata = {'name': lb.name, 'namespace': cfg.proxy_server.namespace}
    annotations = lb.valid_annotations()
    if annotations:
        metadata['annotations'] = annotations
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': metadata,
        'spec': {
            'selector': _server_selector(),
            'type': 'LoadBalancer',
            'ports': _server_ports()
        }
    }


def new_proxy_server_deployment(cfg: ManagedProxyConfiguration, image_pull_policy: str) -> Dict[str, Any]:
    server = cfg.proxy_server
    secrets = cfg.authentication.secrets
    args = [
        f"--server-count={server.replicas}",
        "--proxy-strategies=destHost",
        "--server-ca-cert=/etc/server-ca-pki/ca.crt",
        "--server-cert=/etc/server-pki/tls.crt",
        "--server-key=/etc/server-pki/tls.key",
        "--cluster-ca-cert=/etc/server-ca-pki/ca.crt",
        "--cluster-cert=/etc/agent-pki/tls.crt",
        "--cluster-key=/etc/agent-pki/tls.key",
    ] + list(server.additional_args)

    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': _metadata(cfg, cfg.name),
        'spec': {
            'replicas': server.replicas,
            'selector': {'matchLabels': _server_selector()},
            'strategy': {'type': 'Recreate'},
            'template': {
                'metadata': {
                    'labels': _server_selector(),
                    'annotations': {Config.api.ANNOTATION_GENERATION: str(cfg.generation)}
                },
                'spec': {
                    'serviceAccountName': Config.api.ADDON_NAME,
                    'containers': [{
                        'name': Config.api.COMPONENT_PROXY_SERVER,
                        'image': server.image,
                        'imagePullPolicy': image_pull_policy,
                        'command': ['/proxy-server'],
                        'args': args,
                        'securityContext': {
                            'capabilities': {'drop': ['ALL']},
                            'privileged': False,
                            'runAsNonRoot': True,
                            'readOnlyRootFilesystem': True,
                            'allowPrivilegeEscalation': False
                        },
                        'volumeMounts': [
                            {'name': 'proxy-server-ca-certs', 'readOnly': True, 'mountPath': '/etc/server-ca-pki/'},
                            {'name': 'proxy-server-certs', 'readOnly': True, 'mountPath': '/etc/server-pki/'},
                            {'name': 'proxy-agent-certs', 'readOnly': True, 'mountPath': '/etc/agent-pki/'}
                        ]
                    }],
                    'volumes': [
                        {'name': 'proxy-server-ca-certs',
                         'secret': {'secretName': Config.api.CA_DUMP_SECRET_NAME}},
                        {'name': 'proxy-server-certs',
                         'secret': {'secretName': secrets.signing_proxy_server_secret_name}},
                        {'name': 'proxy-agent-certs',
                         'secret': {'secretName': secrets.signing_agent_server_secret_name}}
                    ],
                    'nodeSelector': dict(server.node_placement.node_selector),
                    'tolerations': list(server.node_placement.tolerations)
                }
            }
        }
    }


def new_proxy_server_role(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    return {
        'apiVersion': 'rbac.authorization.k8s.io/v1',
        'kind': 'Role',
        'metadata': _metadata(cfg, Config.api.PORT_FORWARD_ROLE_NAME),
        'rules': [{
            'apiGroups': [''],
            'verbs': ['*'],
            'resources': ['pods', 'pods/portforward']
        }]
    }


def new_proxy_server_role_binding(cfg: ManagedProxyConfiguration) -> Dict[str, Any]:
    return {
        'apiVersion': 'rbac.authorization.k8s.io/v1',
        'kind': 'RoleBinding',
        'metadata': _metadata(cfg, Config.api.PORT_FORWARD_ROLE_NAME),
        'roleRef': {
            'apiGroup': 'rbac.authorization.k8s.io',
            'kind': 'Role',
            'name': Config.api.PORT_FORWARD_ROLE_NAME
        },
        'subjects': [{
            'apiGroup': 'rbac.authorization.k8s.io',
            'kind': 'Group',
            'name': Config.api.SUBJECT_GROUP_CLUSTER_PROXY
        }]
    }


def desired_resources(cfg: ManagedProxyConfiguration, ca_data: bytes, image_pull_policy: str) -> List[Dict[str, Any]]:
    """Resources applied on every pass, in apply order."""
    resources = [
        new_service_account(cfg),
        new_proxy_service(cfg),
        new_proxy_secret(cfg, ca_data),
        new_proxy_server_deployment(cfg, image_pull_policy),
    ]
    if cfg.proxy_server.entrypoint.type == EntrypointType.PORT_FORWARD:
        resources.append(new_proxy_server_role(cfg))
        resources.append(new_proxy_server_role_binding(cfg))
    return resources
