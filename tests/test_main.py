"""Tests for operator startup wiring."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import kopf
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cluster_proxy_operator import main
from cluster_proxy_operator.config import Config
from cluster_proxy_operator.controllers.configuration_controller import ConfigurationReconciler


@pytest.fixture
def memo(monkeypatch, clients):
    apis_api = MagicMock()
    apis_api.get_api_versions.return_value = SimpleNamespace(groups=[])
    monkeypatch.setattr(Config, "initialize_kubernetes", staticmethod(lambda: dict(clients, apis_api=apis_api)))
    monkeypatch.setattr(main, "configure_logging", lambda: None)

    memo = kopf.Memo()
    main.configure(settings=kopf.OperatorSettings(), memo=memo)
    return memo


def _agent_csr(signer_name):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "cluster1-agent")]))
        .sign(key, hashes.SHA256())
    )
    request = base64.b64encode(csr.public_bytes(serialization.Encoding.PEM)).decode()
    return {"metadata": {"name": "addon-cluster1"}, "spec": {"signerName": signer_name, "request": request}}


class TestConfigure:
    def test_stores_controller_and_ca(self, memo, cluster):
        """Test startup wires the reconciler and persists the CA."""
        assert isinstance(memo.controller, ConfigurationReconciler)
        assert memo.controller.settings.supports_v1_csr is False
        assert cluster.get("Secret", "default", "cluster-proxy-signer") is not None

    def test_exports_agent_csr_signer(self, memo):
        """Test the exported callback signs only proxy-agent CSRs with the operator CA."""
        signed = memo.csr_signer(_agent_csr(Config.api.PROXY_AGENT_SIGNER_NAME))

        cert = x509.load_pem_x509_certificate(signed)
        cert.verify_directly_issued_by(memo.controller.signer.ca_certificates()[0])
        assert memo.csr_signer(_agent_csr("kubernetes.io/kube-apiserver-client")) is None
