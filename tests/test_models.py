"""Tests for the configuration models."""

from datetime import datetime, timezone

import pytest

from cluster_proxy_operator.exceptions import ConfigurationError
from cluster_proxy_operator.models import (
    AnnotationVar,
    Condition,
    ConfigurationStatus,
    Entrypoint,
    EntrypointType,
    LoadBalancerServiceEntrypoint,
    ManagedProxyConfiguration,
    ProxyServerSpec,
    is_qualified_name,
)


class TestManagedProxyConfiguration:
    def test_defaults(self):
        cfg = ManagedProxyConfiguration.from_dict({"metadata": {"name": "cluster-proxy"}, "spec": {}})

        assert cfg.proxy_server.namespace == "open-cluster-management-cluster-proxy"
        assert cfg.proxy_server.in_cluster_service_name == "proxy-entrypoint"
        assert cfg.proxy_server.replicas == 3
        assert cfg.proxy_server.entrypoint.type == EntrypointType.PORT_FORWARD
        assert cfg.proxy_server.entrypoint.port == 8091
        assert cfg.authentication.secrets.signing_proxy_server_secret_name == "proxy-server"
        assert cfg.authentication.secrets.signing_agent_server_secret_name == "agent-server"
        assert cfg.authentication.secrets.signing_proxy_client_secret_name == "proxy-client"

    def test_parses_full_body(self, configuration_body):
        body = configuration_body(
            additionalArgs=["--v=4"],
            nodePlacement={"nodeSelector": {"role": "infra"}, "tolerations": [{"operator": "Exists"}]},
        )
        body["spec"]["authentication"]["dump"]["secrets"] = {"signingProxyServerSecretName": "custom"}

        cfg = ManagedProxyConfiguration.from_dict(body)

        assert (cfg.name, cfg.uid, cfg.generation) == ("cluster-proxy", "1234-5678", 1)
        assert cfg.proxy_server.additional_args == ["--v=4"]
        assert cfg.proxy_server.node_placement.node_selector == {"role": "infra"}
        assert cfg.authentication.secrets.signing_proxy_server_secret_name == "custom"
        assert cfg.authentication.secrets.signing_agent_server_secret_name == "agent-server"

    def test_explicit_nulls_take_defaults(self, configuration_body):
        """Test null fields written by clients fall back to the CRD defaults."""
        body = configuration_body()
        body["spec"]["proxyServer"].update({"replicas": None, "namespace": None, "additionalArgs": None})
        body["spec"]["proxyAgent"] = {"replicas": None}

        cfg = ManagedProxyConfiguration.from_dict(body)

        assert cfg.proxy_server.replicas == 3
        assert cfg.proxy_server.namespace == "open-cluster-management-cluster-proxy"
        assert cfg.proxy_server.additional_args == []
        assert cfg.proxy_agent.replicas == 1

    def test_empty_names_take_defaults(self):
        spec = ProxyServerSpec.from_dict({"namespace": "", "inClusterServiceName": ""})

        assert spec.namespace == "open-cluster-management-cluster-proxy"
        assert spec.in_cluster_service_name == "proxy-entrypoint"

    def test_invalid_replicas_is_configuration_error(self, configuration_body):
        body = configuration_body()
        body["spec"]["proxyServer"]["replicas"] = "many"

        with pytest.raises(ConfigurationError):
            ManagedProxyConfiguration.from_dict(body)

    def test_requires_name(self):
        with pytest.raises(ConfigurationError):
            ManagedProxyConfiguration.from_dict({"metadata": {}})

    def test_rejects_unknown_signer(self, configuration_body):
        body = configuration_body()
        body["spec"]["authentication"]["signer"]["type"] = "CertManager"

        with pytest.raises(ConfigurationError):
            ManagedProxyConfiguration.from_dict(body)


class TestEntrypoint:
    def test_hostname_requires_value(self):
        with pytest.raises(ConfigurationError):
            Entrypoint.from_dict({"type": "Hostname"})

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError):
            Entrypoint.from_dict({"type": "NodePort"})

    def test_load_balancer_defaults(self):
        entrypoint = Entrypoint.from_dict({"type": "LoadBalancerService"})

        assert entrypoint.load_balancer_service.name == "proxy-agent-entrypoint"


class TestAnnotations:
    def test_invalid_annotations_are_skipped(self):
        lb = LoadBalancerServiceEntrypoint(annotations=[
            AnnotationVar(key="service.beta.kubernetes.io/aws-load-balancer-internal", value="true"),
            AnnotationVar(key="bad key!", value="x"),
            AnnotationVar(key="ok", value="not a valid value"),
        ])

        assert lb.valid_annotations() == {"service.beta.kubernetes.io/aws-load-balancer-internal": "true"}

    def test_no_annotations(self):
        assert LoadBalancerServiceEntrypoint().valid_annotations() is None

    @pytest.mark.parametrize("key, valid", [
        ("app", True),
        ("example.com/app", True),
        ("Example.com/app", False),
        ("a/b/c", False),
        ("-app", False),
        ("", False),
    ])
    def test_qualified_names(self, key, valid):
        assert is_qualified_name(key) is valid


class TestStatus:
    def test_condition_from_and_to_dict(self):
        data = {
            "type": "ProxyServerDeployed",
            "status": "True",
            "reason": "SuccessfullyDeployed",
            "message": "Replicas: 3",
            "lastTransitionTime": "2024-01-01T00:00:00Z",
            "observedGeneration": 2,
        }

        condition = Condition.from_dict(data)

        assert condition.status is True
        assert condition.last_transition_time == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert condition.to_dict() == data

    def test_status_from_empty(self):
        status = ConfigurationStatus.from_dict(None)

        assert status.conditions == []
        assert status.last_observed_generation == 0

    def test_unknown_condition_status_is_false(self):
        condition = Condition.from_dict({"type": "ProxyServerDeployed", "status": "Unknown"})

        assert condition.status is False
        assert condition.last_transition_time is None
