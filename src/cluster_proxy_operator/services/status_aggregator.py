from kubernetes.client.rest import ApiException
from cryptography import x509
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import copy

from cluster_proxy_operator.config import Config
from cluster_proxy_operator.models import (
    CONDITION_AGENT_SERVER_SECRET_SIGNED,
    CONDITION_PROXY_SERVER_DEPLOYED,
    CONDITION_PROXY_SERVER_SECRET_SIGNED,
    Condition,
    ConfigurationStatus,
    ManagedProxyConfiguration,
    format_time,
)
from cluster_proxy_operator.services.cert_rotation import TLS_CERT
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils
from cluster_proxy_operator.utils.log_config import setup_logger


@dataclass
class ProxyState:
    is_currently_deployed: bool
    replicas: int
    proxy_server_cert_expire_time: Optional[datetime]
    agent_server_cert_expire_time: Optional[datetime]


def set_status_condition(conditions: List[Condition], new: Condition, now: datetime) -> None:
    """Insert or update a condition, moving its transition time only when the status flips."""
    for existing in conditions:
        if existing.type != new.type:
            continue
        if existing.status != new.status or existing.last_transition_time is None:
            existing.status = new.status
            existing.last_transition_time = new.last_transition_time or now
        existing.reason = new.reason
        existing.message = new.message
        existing.observed_generation = new.observed_generation
        return
    added = new.model_copy()
    added.last_transition_time = new.last_transition_time or now
    conditions.append(added)


def status_unchanged(current: ConfigurationStatus, expected: ConfigurationStatus) -> bool:
    if current.last_observed_generation != expected.last_observed_generation:
        return False
    stored = {c.type: c for c in current.conditions}
    return all(c.type in stored and stored[c.type].same_state(c) for c in expected.conditions)


class StatusAggregator:
    def __init__(self, core_v1_api, apps_v1_api, custom_objects_api,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.core_v1_api = core_v1_api
        self.apps_v1_api = apps_v1_api
        self.custom_objects_api = custom_objects_api
        self.clock = clock
        self.logger = setup_logger('status-aggregator')

    def get_current_state(self, cfg: ManagedProxyConfiguration) -> ProxyState:
        """Read deployment scale and server cert expiry from the live cluster."""
        namespace = cfg.proxy_server.namespace
        secrets = cfg.authentication.secrets
        deployed, replicas = True, 0
        try:
            scale = KubernetesUtils.as_dict(self.apps_v1_api.read_namespaced_deployment_scale(cfg.name, namespace))
            replicas = int((scale.get('status') or {}).get('replicas') or 0)
        except ApiException as e:
            if not KubernetesUtils.is_not_found(e):
                raise
            deployed = False

        return ProxyState(
            is_currently_deployed=deployed,
            replicas=replicas,
            proxy_server_cert_expire_time=self._cert_expire_time(namespace, secrets.signing_proxy_server_secret_name),
            agent_server_cert_expire_time=self._cert_expire_time(namespace, secrets.signing_agent_server_secret_name)
        )

    def _cert_expire_time(self, namespace: str, name: str) -> Optional[datetime]:
        try:
            secret = KubernetesUtils.as_dict(self.core_v1_api.read_namespaced_secret(name, namespace))
        except ApiException as e:
            if KubernetesUtils.is_not_found(e):
                return None
            raise
        pem = KubernetesUtils.decode_data(secret, TLS_CERT)
        if not pem:
            return None
        try:
            return x509.load_pem_x509_certificate(pem).not_valid_after_utc
        except ValueError as e:
            self.logger.error(f"Failed parsing cert in secret {namespace}/{name}: {e}")
            return None

    @staticmethod
    def get_conditions(state: ProxyState) -> List[Condition]:
        deployed = Condition(
            type=CONDITION_PROXY_SERVER_DEPLOYED,
            status=False,
            reason="NotYetDeployed",
            message=f"Replicas: {state.replicas}"
        )
        if state.is_currently_deployed:
            deployed.status = True
            deployed.reason = "SuccessfullyDeployed"

        return [
            deployed,
            _signed_condition(CONDITION_PROXY_SERVER_SECRET_SIGNED, state.proxy_server_cert_expire_time),
            _signed_condition(CONDITION_AGENT_SERVER_SECRET_SIGNED, state.agent_server_cert_expire_time),
        ]

    def refresh_status(self, cfg: ManagedProxyConfiguration, body: Dict[str, Any], is_modified: bool) -> bool:
        """
        Recompute conditions and write them when they changed or resources were modified.

        Returns:
            True if the status subresource was written
        """
        state = self.get_current_state(cfg)
        expected = ConfigurationStatus(
            conditions=self.get_conditions(state),
            last_observed_generation=cfg.generation
        )
        if not is_modified and status_unchanged(cfg.status, expected):
            self.logger.debug(f"Status of {cfg.name} is up-to-date")
            return False

        now = self.clock()
        status = cfg.status.model_copy(deep=True)
        status.last_observed_generation = expected.last_observed_generation
        for condition in expected.conditions:
            set_status_condition(status.conditions, condition, now)

        updated = copy.deepcopy(body)
        updated['status'] = status.to_dict()
        self.custom_objects_api.replace_cluster_custom_object_status(
            Config.api.PROXY_GROUP, Config.api.PROXY_VERSION,
            Config.api.CONFIGURATION_PLURAL, cfg.name, updated
        )
        self.logger.info(f"Updated status of {cfg.name}")
        return True


def _signed_condition(condition_type: str, expire_time: Optional[datetime]) -> Condition:
    if expire_time is None:
        return Condition(type=condition_type, status=False, reason="NotYetSigned")
    return Condition(
        type=condition_type,
        status=True,
        reason="SuccessfullySigned",
        message=f"Expiry:{format_time(expire_time)}"
    )
