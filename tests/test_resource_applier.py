"""Tests for generation-keyed resource application."""

from unittest.mock import MagicMock

import pytest

from cluster_proxy_operator.exceptions import ResourceApplyError
from cluster_proxy_operator.services.resource_applier import ResourceApplier, current_generation
from cluster_proxy_operator.utils.kubernetes import ResourceClient

from fakes import api_error

GENERATION_KEY = "proxy.open-cluster-management.io/configuration-generation"


def _deployment(replicas=3):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "cluster-proxy", "namespace": "proxy-ns"},
        "spec": {"replicas": replicas},
    }


def _service(port=8090):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "proxy-entrypoint", "namespace": "proxy-ns"},
        "spec": {"ports": [{"name": "proxy-server", "port": port}]},
    }


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def applier(clients, sleep):
    return ResourceApplier(ResourceClient(clients), max_attempts=3, backoff=0.1, sleep=sleep)


class TestCurrentGeneration:
    def test_reads_annotation(self):
        assert current_generation({"metadata": {"annotations": {GENERATION_KEY: "4"}}}) == 4

    def test_missing_annotation_is_zero(self):
        assert current_generation({"metadata": {}}) == 0

    def test_unparseable_annotation_is_zero(self):
        assert current_generation({"metadata": {"annotations": {GENERATION_KEY: "four"}}}) == 0


class TestResourceApplier:
    """Tests for ResourceApplier.ensure."""

    def test_creates_missing_resource(self, applier, cluster):
        """Test an absent resource is created and stamped with the generation."""
        assert applier.ensure(1, _deployment()) == (True, False)

        stored = cluster.get("Deployment", "proxy-ns", "cluster-proxy")
        assert stored["metadata"]["annotations"][GENERATION_KEY] == "1"

    def test_does_not_mutate_desired(self, applier):
        desired = _deployment()
        applier.ensure(1, desired)

        assert "annotations" not in desired["metadata"]

    def test_same_generation_is_noop(self, applier, cluster):
        """Test nothing is written when the applied generation is current."""
        applier.ensure(1, _deployment())
        cluster.reset_writes()

        assert applier.ensure(1, _deployment(replicas=1)) == (False, False)
        assert cluster.writes == []
        assert cluster.get("Deployment", "proxy-ns", "cluster-proxy")["spec"]["replicas"] == 3

    def test_older_generation_is_noop(self, applier, cluster):
        applier.ensure(5, _deployment())
        cluster.reset_writes()

        assert applier.ensure(4, _deployment(replicas=1)) == (False, False)
        assert cluster.writes == []

    def test_newer_generation_replaces(self, applier, cluster):
        """Test a generation bump replaces the stored object."""
        applier.ensure(1, _deployment())
        cluster.reset_writes()

        assert applier.ensure(2, _deployment(replicas=1)) == (False, True)

        stored = cluster.get("Deployment", "proxy-ns", "cluster-proxy")
        assert stored["spec"]["replicas"] == 1
        assert stored["metadata"]["annotations"][GENERATION_KEY] == "2"
        assert cluster.writes == [("replace", "Deployment", "proxy-ns", "cluster-proxy")]

    def test_unparseable_annotation_is_updated(self, applier, cluster):
        """Test an unparseable applied generation counts as zero."""
        broken = _deployment()
        broken["metadata"]["annotations"] = {GENERATION_KEY: "not-a-number"}
        cluster.put("Deployment", "proxy-ns", "cluster-proxy", broken)

        assert applier.ensure(1, _deployment(replicas=2)) == (False, True)

    def test_service_is_never_updated(self, applier, cluster):
        """Test a Service keeps its first spec across generations."""
        applier.ensure(1, _service())
        cluster.reset_writes()

        assert applier.ensure(2, _service(port=9999)) == (False, False)
        assert cluster.writes == []
        stored = cluster.get("Service", "proxy-ns", "proxy-entrypoint")
        assert stored["spec"]["ports"][0]["port"] == 8090

    def test_conflict_is_retried(self, applier, cluster, sleep):
        """Test a single update conflict is retried and still reports an update."""
        applier.ensure(1, _deployment())
        cluster.fail_next("replace", "Deployment", 409, "Conflict")

        assert applier.ensure(2, _deployment(replicas=1)) == (False, True)
        sleep.assert_called_once_with(0.1)

    def test_conflict_backoff_grows(self, applier, cluster, sleep):
        applier.ensure(1, _deployment())
        cluster.fail_next("replace", "Deployment", 409, "Conflict", times=2)

        assert applier.ensure(2, _deployment(replicas=1)) == (False, True)
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]

    def test_exhausted_conflicts_raise(self, applier, cluster, sleep):
        """Test persistent conflicts give up after max_attempts."""
        applier.ensure(1, _deployment())
        cluster.fail_next("replace", "Deployment", 409, "Conflict", times=3)

        with pytest.raises(ResourceApplyError) as exc_info:
            applier.ensure(2, _deployment(replicas=1))

        assert "still conflicting" in str(exc_info.value)
        assert sleep.call_count == 2

    def test_recreates_after_delete_during_conflict(self, applier, cluster, monkeypatch):
        """Test an object deleted between a conflict and the retry is created fresh."""
        applier.ensure(1, _deployment())
        replace = cluster.replace

        def delete_then_conflict(kind, namespace, name, body):
            monkeypatch.setattr(cluster, "replace", replace)
            del cluster.objects[(kind, namespace, name)]
            raise api_error(409, "Conflict")

        monkeypatch.setattr(cluster, "replace", delete_then_conflict)

        assert applier.ensure(2, _deployment(replicas=1)) == (True, False)

        stored = cluster.get("Deployment", "proxy-ns", "cluster-proxy")
        assert stored["spec"]["replicas"] == 1
        assert stored["metadata"]["annotations"][GENERATION_KEY] == "2"

    def test_replace_failure_raises(self, applier, cluster):
        applier.ensure(1, _deployment())
        cluster.fail_next("replace", "Deployment", 500, "InternalError")

        with pytest.raises(ResourceApplyError) as exc_info:
            applier.ensure(2, _deployment(replicas=1))

        assert exc_info.value.action == "update"
        assert exc_info.value.kind == "Deployment"

    def test_create_race_falls_back_to_update(self, applier, cluster):
        """Test losing a create race compares against the winner's object."""
        cluster.fail_next("create", "Deployment", 409, "AlreadyExists")
        cluster.fail_next("read", "Deployment", 404, "NotFound")
        cluster.put("Deployment", "proxy-ns", "cluster-proxy", _deployment())

        assert applier.ensure(1, _deployment(replicas=1)) == (False, True)

    def test_create_failure_raises(self, applier, cluster):
        cluster.fail_next("create", "Deployment", 403, "Forbidden")

        with pytest.raises(ResourceApplyError) as exc_info:
            applier.ensure(1, _deployment())

        assert exc_info.value.action == "create"

    def test_unsupported_kind(self, applier):
        with pytest.raises(ValueError):
            applier.ensure(1, {"kind": "ConfigMap", "metadata": {"name": "x", "namespace": "y"}})
