# controllers/configuration_controller.py
import kopf
from kubernetes.client.rest import ApiException
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import threading

from cluster_proxy_operator.config import Config, OperatorSettings
from cluster_proxy_operator.exceptions import (
    CACorruptedError,
    ConfigurationError,
    ConfigurationNotFoundError,
    EntrypointNotReadyError,
    ResourceApplyError,
    RotationError,
    SigningError,
)
from cluster_proxy_operator.models import EntrypointType, ManagedProxyConfiguration
from cluster_proxy_operator.services import manifests
from cluster_proxy_operator.services.cert_rotation import CertRotation, SecretCertRotation, UsageProfile
from cluster_proxy_operator.services.resource_applier import ResourceApplier
from cluster_proxy_operator.services.self_signer import SelfSigner
from cluster_proxy_operator.services.status_aggregator import StatusAggregator
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils, ResourceClient, ResourceKind, RESOURCE_KINDS
from cluster_proxy_operator.utils.log_config import setup_logger


@dataclass
class RotationTarget:
    """One secret holding a leaf cert/key pair signed by the CA."""
    description: str
    secret_name: str
    usage: UsageProfile


def compute_sans(cfg: ManagedProxyConfiguration, entrypoint: str) -> List[str]:
    """Hostnames every server and client cert is issued for, without duplicates."""
    server = cfg.proxy_server
    sans = list(cfg.authentication.additional_sans) + [
        "127.0.0.1",
        "localhost",
        entrypoint,
        f"{server.in_cluster_service_name}.{server.namespace}",
        f"{server.in_cluster_service_name}.{server.namespace}.svc",
    ]
    if server.entrypoint.type == EntrypointType.HOSTNAME:
        sans.append(server.entrypoint.hostname.value)

    result = []
    for san in sans:
        if san and san not in result:
            result.append(san)
    return result


def rotation_targets(cfg: ManagedProxyConfiguration, supports_v1_csr: bool) -> List[RotationTarget]:
    secrets = cfg.authentication.secrets
    targets = [
        RotationTarget("proxy server", secrets.signing_proxy_server_secret_name, UsageProfile.SERVER),
        RotationTarget("agent server", secrets.signing_agent_server_secret_name, UsageProfile.SERVER),
        RotationTarget("proxy client", secrets.signing_proxy_client_secret_name, UsageProfile.CLIENT),
    ]
    if not supports_v1_csr:
        # without CSR v1 there is no custom signer, so the hub signs the agent client cert itself
        targets.append(RotationTarget("agent client", Config.api.AGENT_CLIENT_SECRET_NAME, UsageProfile.CLIENT))
    return targets


class ConfigurationReconciler:
    def __init__(self, clients: Dict[str, Any], signer: SelfSigner, settings: OperatorSettings,
                 rotation: Optional[CertRotation] = None,
                 applier: Optional[ResourceApplier] = None,
                 status: Optional[StatusAggregator] = None,
                 recorder: Callable[..., None] = kopf.info):
        self.core_v1_api = clients['core_v1_api']
        self.custom_objects_api = clients['custom_objects_api']
        self.signer = signer
        self.settings = settings
        self.resources = ResourceClient(clients)
        self.rotation = rotation or SecretCertRotation(
            self.core_v1_api, signer, settings.cert_validity, settings.renew_before
        )
        self.applier = applier or ResourceApplier(
            self.resources, settings.max_conflict_retries, settings.conflict_backoff_seconds
        )
        self.status = status or StatusAggregator(
            self.core_v1_api, clients['apps_v1_api'], self.custom_objects_api
        )
        self.recorder = recorder
        self.logger = setup_logger('configuration-controller')
        self._locks = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def reconcile(self, name: str) -> None:
        """Run one level-triggered pass: namespace, entrypoint, rotation, resources, status."""
        with self._lock_for(name):
            self.logger.info(f"Start reconcile {name}")
            body = self._get_configuration(name)
            cfg = ManagedProxyConfiguration.from_dict(body)

            self.ensure_namespace(cfg)
            entrypoint = self.ensure_entrypoint(cfg)
            self.ensure_rotation(cfg, entrypoint)

            is_modified = self.deploy_resources(cfg, body)
            if not is_modified:
                self.logger.info("Proxy server resources are up-to-date")
            self.status.refresh_status(cfg, body, is_modified)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[name]

    def _get_configuration(self, name: str) -> Dict[str, Any]:
        try:
            return self.custom_objects_api.get_cluster_custom_object(
                Config.api.PROXY_GROUP, Config.api.PROXY_VERSION,
                Config.api.CONFIGURATION_PLURAL, name
            )
        except ApiException as e:
            if KubernetesUtils.is_not_found(e):
                raise ConfigurationNotFoundError(name) from e
            raise

    def ensure_namespace(self, cfg: ManagedProxyConfiguration) -> None:
        kind = RESOURCE_KINDS['Namespace']
        namespace = cfg.proxy_server.namespace
        if self._get_live(kind, '', namespace) is not None:
            return
        try:
            self.resources.create(kind, manifests.new_namespace(namespace))
            self.logger.info(f"Created namespace {namespace}")
        except ApiException as e:
            if KubernetesUtils.is_already_exists(e):
                return
            raise ResourceApplyError('create', 'Namespace', '', namespace, str(e)) from e

    def ensure_entrypoint(self, cfg: ManagedProxyConfiguration) -> str:
        """Resolve the address agents use to reach the proxy server."""
        entrypoint = cfg.proxy_server.entrypoint
        if entrypoint.type == EntrypointType.HOSTNAME:
            return entrypoint.hostname.value
        if entrypoint.type != EntrypointType.LOAD_BALANCER_SERVICE:
            return ""

        kind = RESOURCE_KINDS['Service']
        namespace = cfg.proxy_server.namespace
        service = manifests.new_load_balancer_service(cfg)
        name = service['metadata']['name']
        live = self._get_live(kind, namespace, name)
        if live is None:
            try:
                live = self.resources.create(kind, service)
                self.logger.info(f"Created entrypoint service {namespace}/{name}")
            except ApiException as e:
                if not KubernetesUtils.is_already_exists(e):
                    raise ResourceApplyError('create', 'Service', namespace, name, str(e)) from e
                live = self._get_live(kind, namespace, name) or {}

        ingress = ((live.get('status') or {}).get('loadBalancer') or {}).get('ingress') or []
        address = (ingress[0].get('ip') or ingress[0].get('hostname')) if ingress else None
        if not address:
            raise EntrypointNotReadyError(f"External address of service {namespace}/{name} not yet provisioned")
        return address

    def _get_live(self, kind: ResourceKind, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.resources.get(kind, namespace, name)
        except ApiException as e:
            raise ResourceApplyError('get', kind.kind, namespace, name, str(e)) from e

    def ensure_rotation(self, cfg: ManagedProxyConfiguration, entrypoint: str) -> None:
        """Rotate every target in order. The first failure aborts the rest of the pass."""
        sans = compute_sans(cfg, entrypoint)
        for target in rotation_targets(cfg, self.settings.supports_v1_csr):
            try:
                self.rotation.ensure(cfg.proxy_server.namespace, target.secret_name, sans, target.usage)
            except CACorruptedError:
                raise
            except (ApiException, SigningError) as e:
                raise RotationError(target.description, str(e)) from e

    def deploy_resources(self, cfg: ManagedProxyConfiguration, body: Dict[str, Any]) -> bool:
        """Apply the desired proxy-server resources. Returns True if anything was created or updated."""
        created_kinds, updated_kinds = set(), set()
        for resource in manifests.desired_resources(cfg, self.signer.ca_data(), self.settings.proxy_server_image_pull_policy):
            created, updated = self.applier.ensure(cfg.generation, resource)
            if created:
                created_kinds.add(resource['kind'])
            if updated:
                updated_kinds.add(resource['kind'])

        if created_kinds:
            self.recorder(body, reason='ProxyServerCreated',
                          message=f"Resources are created: {sorted(created_kinds)}")
        if updated_kinds:
            self.recorder(body, reason='ProxyServerUpdated',
                          message=f"Resources are updated: {sorted(updated_kinds)}")
        return bool(created_kinds or updated_kinds)


def _reconcile(name: str, memo: kopf.Memo) -> None:
    controller = memo.get('controller')
    if controller is None:
        raise kopf.PermanentError("Controller not initialized")
    try:
        controller.reconcile(name)
    except ConfigurationNotFoundError:
        controller.logger.info(f"ManagedProxyConfiguration {name} is gone, nothing to do")
    except EntrypointNotReadyError as e:
        raise kopf.TemporaryError(str(e), delay=controller.settings.entrypoint_retry_delay_seconds)
    except (CACorruptedError, ConfigurationError) as e:
        controller.logger.error(f"Reconcile of {name} needs operator intervention: {e}")
        raise kopf.PermanentError(str(e))


# Kopf handlers
@kopf.on.resume(Config.api.PROXY_GROUP, Config.api.PROXY_VERSION, Config.api.CONFIGURATION_PLURAL)
@kopf.on.create(Config.api.PROXY_GROUP, Config.api.PROXY_VERSION, Config.api.CONFIGURATION_PLURAL)
@kopf.on.update(Config.api.PROXY_GROUP, Config.api.PROXY_VERSION, Config.api.CONFIGURATION_PLURAL)
def reconcile_configuration(name: str, memo: kopf.Memo, **_):
    """Handler for configuration changes."""
    _reconcile(name, memo)


@kopf.daemon(Config.api.PROXY_GROUP, Config.api.PROXY_VERSION, Config.api.CONFIGURATION_PLURAL,
             initial_delay=60.0)
def resync_configuration(name: str, memo: kopf.Memo, stopped: kopf.DaemonStopped, **_):
    """Periodic resync so drifted resources and expiring certs are caught without a spec change."""
    controller = memo.get('controller')
    interval = (controller.settings.resync_interval_seconds if controller
                else OperatorSettings.model_fields['resync_interval_seconds'].default)
    while not stopped:
        _reconcile(name, memo)
        stopped.wait(interval)
