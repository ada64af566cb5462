from kubernetes.client.rest import ApiException
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from typing import Any, Callable, Dict, Tuple
import copy
import time

from cluster_proxy_operator.config import Config
from cluster_proxy_operator.exceptions import ResourceApplyError
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils, ResourceClient, ResourceKind
from cluster_proxy_operator.utils.log_config import setup_logger


def current_generation(obj: Dict[str, Any]) -> int:
    """Generation annotation of a live object, 0 when missing or unparseable."""
    value = KubernetesUtils.annotations(obj).get(Config.api.ANNOTATION_GENERATION, '')
    try:
        return int(value)
    except ValueError:
        return 0


def _is_bare_service(kind: ResourceKind) -> bool:
    return kind.api_version == 'v1' and kind.kind == 'Service'


class _StaleRead(Exception):
    """The object changed between our read and our write."""


class ResourceApplier:
    """Idempotent create-or-update keyed by the configuration generation."""

    def __init__(self, resource_client: ResourceClient, max_attempts: int = 5, backoff: float = 0.2,
                 sleep: Callable[[float], None] = time.sleep):
        self.resources = resource_client
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep
        self.logger = setup_logger('resource-applier')

    def ensure(self, generation: int, desired: Dict[str, Any]) -> Tuple[bool, bool]:
        """
        Create the resource if absent, update it once generation exceeds the applied one.

        Services are never updated after creation so their cluster IP stays put.
        Update conflicts are retried with exponential backoff up to max_attempts.

        Returns:
            (created, updated)
        """
        kind = ResourceClient.kind_of(desired)
        resource = copy.deepcopy(desired)
        metadata = resource.setdefault('metadata', {})
        metadata['annotations'] = dict(metadata.get('annotations') or {},
                                       **{Config.api.ANNOTATION_GENERATION: str(generation)})
        namespace = metadata.get('namespace', '')
        name = metadata['name']

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff),
            retry=retry_if_exception_type(_StaleRead),
            sleep=self.sleep,
            reraise=True
        )
        try:
            for attempt in retrying:
                with attempt:
                    result = self._apply(kind, generation, resource)
        except _StaleRead as e:
            raise ResourceApplyError('update', kind.kind, namespace, name,
                                     f"still conflicting after {self.max_attempts} attempts") from e
        return result

    def _apply(self, kind: ResourceKind, generation: int, resource: Dict[str, Any]) -> Tuple[bool, bool]:
        metadata = resource['metadata']
        namespace = metadata.get('namespace', '')
        name = metadata['name']

        current = self._get(kind, namespace, name)
        if current is None:
            # left over from a previous attempt's replace
            metadata.pop('resourceVersion', None)
            if self._create(kind, resource, namespace, name):
                return True, False
            current = self._get(kind, namespace, name)
            if current is None:
                raise _StaleRead(f"{kind.kind} {namespace}/{name} vanished after a create race")

        if _is_bare_service(kind):
            return False, False
        applied = current_generation(current)
        if generation <= applied:
            return False, False

        metadata['resourceVersion'] = (current.get('metadata') or {}).get('resourceVersion')
        try:
            self.resources.replace(kind, resource)
        except ApiException as e:
            if not KubernetesUtils.is_conflict(e):
                raise ResourceApplyError('update', kind.kind, namespace, name, str(e)) from e
            self.logger.info(f"Conflict updating {kind.kind} {namespace}/{name}")
            raise _StaleRead(str(e)) from e
        self.logger.info(f"Updated {kind.kind} {namespace}/{name} to generation {generation} (was {applied})")
        return False, True

    def _get(self, kind: ResourceKind, namespace: str, name: str):
        try:
            return self.resources.get(kind, namespace, name)
        except ApiException as e:
            raise ResourceApplyError('get', kind.kind, namespace, name, str(e)) from e

    def _create(self, kind: ResourceKind, resource: Dict[str, Any], namespace: str, name: str) -> bool:
        """Create the resource. Returns False when someone else created it first."""
        try:
            self.resources.create(kind, resource)
        except ApiException as e:
            if KubernetesUtils.is_already_exists(e):
                return False
            raise ResourceApplyError('create', kind.kind, namespace, name, str(e)) from e
        self.logger.info(f"Created {kind.kind} {namespace}/{name}")
        return True
