"""Shared test fixtures for cluster-proxy operator tests."""

import copy
from unittest.mock import MagicMock

import pytest

from cluster_proxy_operator.config import OperatorSettings
from cluster_proxy_operator.controllers.configuration_controller import ConfigurationReconciler
from cluster_proxy_operator.services.self_signer import generate_self_signer

from fakes import FakeCluster, make_clients


@pytest.fixture(scope="session")
def ca_signer():
    """One generated CA shared across tests."""
    return generate_self_signer()


@pytest.fixture
def signer():
    """A fresh CA for tests that count serials."""
    return generate_self_signer()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clients(cluster):
    return make_clients(cluster)


@pytest.fixture
def settings():
    return OperatorSettings(
        cert_validity_days=180,
        cert_renew_before_days=36,
        max_conflict_retries=3,
        conflict_backoff_seconds=0.0,
        supports_v1_csr=True,
    )


@pytest.fixture
def configuration_body():
    """Factory for ManagedProxyConfiguration bodies."""

    def build(name="cluster-proxy", generation=1, **proxy_server):
        server = {
            "image": "quay.io/open-cluster-management/cluster-proxy:latest",
            "namespace": "proxy-ns",
            "replicas": 3,
            "inClusterServiceName": "proxy-entrypoint",
            "entrypoint": {"type": "PortForward"},
        }
        server.update(proxy_server)
        return {
            "apiVersion": "proxy.open-cluster-management.io/v1alpha1",
            "kind": "ManagedProxyConfiguration",
            "metadata": {"name": name, "uid": "1234-5678", "generation": generation},
            "spec": {
                "proxyServer": server,
                "proxyAgent": {"image": "quay.io/open-cluster-management/cluster-proxy:latest"},
                "authentication": {
                    "signer": {"type": "SelfSigned", "selfSigned": {"additionalSANs": []}},
                    "dump": {"secrets": {}},
                },
            },
        }

    return build


@pytest.fixture
def store_configuration(cluster):
    """Put a configuration body into the fake cluster."""

    def store(body):
        return cluster.put("ManagedProxyConfiguration", "", body["metadata"]["name"], body)

    return store


@pytest.fixture
def bump_configuration(cluster):
    """Mutate a stored configuration's spec and increase its generation."""

    def bump(name, mutate):
        body = copy.deepcopy(cluster.get("ManagedProxyConfiguration", "", name))
        mutate(body["spec"])
        body["metadata"]["generation"] += 1
        return cluster.put("ManagedProxyConfiguration", "", name, body)

    return bump


@pytest.fixture
def recorder():
    return MagicMock()


@pytest.fixture
def reconciler(clients, ca_signer, settings, recorder):
    return ConfigurationReconciler(clients, ca_signer, settings, recorder=recorder)
