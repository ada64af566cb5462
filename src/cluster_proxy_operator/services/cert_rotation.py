from kubernetes.client.rest import ApiException
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set
import ipaddress

from cluster_proxy_operator.services.self_signer import LeafConfig, SelfSigner, client_auth_usage
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils
from cluster_proxy_operator.utils.log_config import setup_logger

TLS_CERT = 'tls.crt'
TLS_KEY = 'tls.key'


class UsageProfile(str, Enum):
    SERVER = "server"
    CLIENT = "client"


class CertRotation(Protocol):
    """Capability of keeping a signed cert/key pair in a secret."""

    def ensure(self, namespace: str, secret_name: str, sans: List[str], usage: UsageProfile) -> bool:
        ...


def _certificate_sans(cert: x509.Certificate) -> Set[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return set()
    names = set(ext.get_values_for_type(x509.DNSName))
    names.update(str(ip) for ip in ext.get_values_for_type(x509.IPAddress))
    return names


def _key_matches(cert: x509.Certificate, key_data: bytes) -> bool:
    try:
        key = serialization.load_pem_private_key(key_data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return False
    spki = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return key.public_key().public_bytes(*spki) == cert.public_key().public_bytes(*spki)


def _normalize_sans(sans: List[str]) -> Set[str]:
    result = set()
    for san in sans:
        if not san:
            continue
        try:
            result.add(str(ipaddress.ip_address(san)))
        except ValueError:
            result.add(san)
    return result


class SecretCertRotation:
    def __init__(self, core_v1_api, signer: SelfSigner, validity: timedelta, renew_before: timedelta,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.core_v1_api = core_v1_api
        self.signer = signer
        self.validity = validity
        self.renew_before = renew_before
        self.clock = clock
        self.logger = setup_logger('cert-rotation')

    def ensure(self, namespace: str, secret_name: str, sans: List[str], usage: UsageProfile) -> bool:
        """Make sure the secret holds a valid leaf signed by the current CA. Returns True if it was (re)issued."""
        secret = self._get_secret(namespace, secret_name)
        reason = self.rotation_reason(secret, sans)
        if reason is None:
            return False

        self.logger.info(f"Rotating {namespace}/{secret_name}: {reason}")
        fns = [client_auth_usage] if usage == UsageProfile.CLIENT else []
        pair = self.signer.sign(LeafConfig.from_hostnames(sans[0] if sans else secret_name, sans),
                                self.validity, *fns)
        cert_pem, key_pem = pair.as_bytes()
        self._store(namespace, secret_name, secret, cert_pem, key_pem)
        return True

    def rotation_reason(self, secret: Optional[Dict[str, Any]], sans: List[str]) -> Optional[str]:
        """Why the stored pair must be reissued, or None when it is still good."""
        if secret is None:
            return "secret is missing"
        cert_data = KubernetesUtils.decode_data(secret, TLS_CERT)
        key_data = KubernetesUtils.decode_data(secret, TLS_KEY)
        if not cert_data or not key_data:
            return "key pair is missing"
        try:
            cert = x509.load_pem_x509_certificate(cert_data)
        except ValueError:
            return "certificate cannot be parsed"
        if not _key_matches(cert, key_data):
            return "private key is invalid or does not match"

        if not self._issued_by_ca(cert):
            return "certificate is not signed by the current CA"
        if self.clock() >= cert.not_valid_after_utc - self.renew_before:
            return f"certificate expires at {cert.not_valid_after_utc.isoformat()}"
        if _certificate_sans(cert) != _normalize_sans(sans):
            return "hostnames changed"
        return None

    def _issued_by_ca(self, cert: x509.Certificate) -> bool:
        for ca in self.signer.ca_certificates():
            try:
                cert.verify_directly_issued_by(ca)
                return True
            except (ValueError, TypeError, InvalidSignature):
                continue
        return False

    def _get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return KubernetesUtils.as_dict(self.core_v1_api.read_namespaced_secret(name, namespace))
        except ApiException as e:
            if KubernetesUtils.is_not_found(e):
                return None
            raise

    def _store(self, namespace: str, name: str, existing: Optional[Dict[str, Any]],
               cert_pem: bytes, key_pem: bytes) -> None:
        data = KubernetesUtils.encode_data({TLS_CERT: cert_pem, TLS_KEY: key_pem})
        if existing is None:
            secret = {
                'apiVersion': 'v1',
                'kind': 'Secret',
                'metadata': {'name': name, 'namespace': namespace},
                'type': 'kubernetes.io/tls',
                'data': data
            }
            self.core_v1_api.create_namespaced_secret(namespace, secret)
            self.logger.info(f"Created secret {namespace}/{name}")
            return
        existing['data'] = dict(existing.get('data') or {}, **data)
        self.core_v1_api.replace_namespaced_secret(name, namespace, existing)
        self.logger.info(f"Updated secret {namespace}/{name}")
