# services/self_signer.py
from kubernetes.client.rest import ApiException
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import ipaddress
import secrets
import threading

from cluster_proxy_operator.config import Config
from cluster_proxy_operator.exceptions import CACorruptedError, SigningError
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils
from cluster_proxy_operator.utils.log_config import setup_logger

RSA_KEY_SIZE = 2048
CA_VALIDITY = timedelta(days=3650)
CREATE_RACE_ATTEMPTS = 3

TLS_CA_CERT = 'ca.crt'
TLS_CA_KEY = 'ca.key'

logger = setup_logger('self-signer')


@dataclass
class LeafConfig:
    """Subject and alternative names requested for a leaf certificate."""
    common_name: str
    organization: List[str] = field(default_factory=list)
    dns_names: List[str] = field(default_factory=list)
    ip_addresses: List[str] = field(default_factory=list)
    usages: List[x509.ObjectIdentifier] = field(default_factory=lambda: [ExtendedKeyUsageOID.SERVER_AUTH])

    @classmethod
    def from_hostnames(cls, common_name: str, hostnames: List[str], **kwargs) -> 'LeafConfig':
        """Split hostnames into IP and DNS alternative names, dropping empties and duplicates."""
        dns_names, ips = [], []
        for host in hostnames:
            if not host:
                continue
            try:
                ip = str(ipaddress.ip_address(host))
                if ip not in ips:
                    ips.append(ip)
            except ValueError:
                if host not in dns_names:
                    dns_names.append(host)
        return cls(common_name=common_name, dns_names=dns_names, ip_addresses=ips, **kwargs)


@dataclass
class LeafTemplate:
    """Mutable certificate template handed to extension functions before signing."""
    serial_number: int
    common_name: str
    organization: List[str]
    dns_names: List[str]
    ip_addresses: List[str]
    ext_key_usages: List[x509.ObjectIdentifier]
    not_before: datetime
    not_after: datetime


ExtensionFunc = Callable[[LeafTemplate], None]


def client_auth_usage(template: LeafTemplate) -> None:
    template.ext_key_usages = [ExtendedKeyUsageOID.CLIENT_AUTH]


def _encode_key(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


@dataclass
class CertPair:
    key: rsa.RSAPrivateKey
    cert: x509.Certificate

    def cert_bytes(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    def as_bytes(self) -> Tuple[bytes, bytes]:
        """PEM-encoded certificate and PKCS8 private key."""
        return self.cert_bytes(), _encode_key(self.key)


class SerialSource(Protocol):
    def next(self) -> int:
        ...


class InMemorySerialCounter:
    """Process-local serial counter. Only safe with a single writer."""

    def __init__(self, start: int):
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            serial = self._next
            self._next += 1
            return serial


def _is_conflict(e: BaseException) -> bool:
    return isinstance(e, ApiException) and KubernetesUtils.is_conflict(e)


class SecretSerialCounter:
    """Serial counter persisted as an annotation on the CA secret.

    Each allocation is a read-modify-replace guarded by the secret's
    resourceVersion, so concurrent writers never receive the same serial.
    """

    def __init__(self, core_v1_api, namespace: str, name: str, floor: int, max_attempts: int = 5):
        self.core_v1_api = core_v1_api
        self.namespace = namespace
        self.name = name
        self.floor = floor
        self.max_attempts = max_attempts

    def next(self) -> int:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.05),
            retry=retry_if_exception(_is_conflict),
            reraise=True
        )
        try:
            return retrying(self._allocate)
        except ApiException as e:
            if not KubernetesUtils.is_conflict(e):
                raise
            raise SigningError(f"Failed to allocate a serial number from {self.namespace}/{self.name}") from e

    def _allocate(self) -> int:
        key = Config.api.ANNOTATION_NEXT_SERIAL
        secret = KubernetesUtils.as_dict(self.core_v1_api.read_namespaced_secret(self.name, self.namespace))
        annotations = KubernetesUtils.annotations(secret)
        try:
            serial = max(int(annotations.get(key, self.floor)), self.floor)
        except ValueError:
            serial = self.floor
        secret['metadata']['annotations'] = dict(annotations, **{key: str(serial + 1)})
        try:
            self.core_v1_api.replace_namespaced_secret(self.name, self.namespace, secret)
        except ApiException as e:
            if KubernetesUtils.is_conflict(e):
                logger.info(f"Serial allocation conflict on {self.namespace}/{self.name}")
            raise
        return serial


class SelfSigner(Protocol):
    """Capability of signing leaf certificates with a private CA."""

    def sign(self, cfg: LeafConfig, validity: timedelta, *fns: ExtensionFunc) -> CertPair:
        ...

    def sign_public_key(self, cfg: LeafConfig, public_key, validity: timedelta,
                        *fns: ExtensionFunc) -> x509.Certificate:
        ...

    def ca_data(self) -> bytes:
        ...

    def ca_certificates(self) -> List[x509.Certificate]:
        ...


class RSASelfSigner:
    def __init__(self, ca_cert: x509.Certificate, ca_key: rsa.RSAPrivateKey,
                 serials: Optional[SerialSource] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._ca_cert = ca_cert
        self._ca_key = ca_key
        self._serials = serials or InMemorySerialCounter(ca_cert.serial_number + 1)
        self._clock = clock

    def sign(self, cfg: LeafConfig, validity: timedelta, *fns: ExtensionFunc) -> CertPair:
        """Issue a fresh key and leaf certificate for cfg, valid for the given duration."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        return CertPair(key=key, cert=self.sign_public_key(cfg, key.public_key(), validity, *fns))

    def sign_public_key(self, cfg: LeafConfig, public_key, validity: timedelta,
                        *fns: ExtensionFunc) -> x509.Certificate:
        """Issue a leaf certificate for a key held elsewhere, e.g. from a CSR."""
        now = self._clock()
        template = LeafTemplate(
            serial_number=self._serials.next(),
            common_name=cfg.common_name,
            organization=list(cfg.organization),
            dns_names=list(cfg.dns_names),
            ip_addresses=list(cfg.ip_addresses),
            ext_key_usages=list(cfg.usages),
            not_before=now,
            not_after=now + validity
        )
        for fn in fns:
            fn(template)

        try:
            certificate = self._build(template, public_key)
        except (ValueError, TypeError) as e:
            raise SigningError(f"Unable to create certificate: {e}") from e
        logger.info(f"Signed certificate {template.common_name} serial={template.serial_number} "
                    f"expiring {template.not_after.isoformat()}")
        return certificate

    def _build(self, template: LeafTemplate, public_key) -> x509.Certificate:
        attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, org) for org in template.organization]
        if template.common_name:
            attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, template.common_name))
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name(attributes))
            .issuer_name(self._ca_cert.subject)
            .public_key(public_key)
            .serial_number(template.serial_number)
            .not_valid_before(template.not_before)
            .not_valid_after(template.not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False
            ), critical=True)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self._ca_key.public_key()), critical=False
            )
        )
        if template.ext_key_usages:
            builder = builder.add_extension(x509.ExtendedKeyUsage(template.ext_key_usages), critical=False)
        names = [x509.DNSName(name) for name in template.dns_names]
        names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in template.ip_addresses]
        if names:
            builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
        return builder.sign(self._ca_key, hashes.SHA256())

    def ca_data(self) -> bytes:
        return self._ca_cert.public_bytes(serialization.Encoding.PEM)

    def ca_certificates(self) -> List[x509.Certificate]:
        return [self._ca_cert]

    def with_serials(self, serials: SerialSource) -> 'RSASelfSigner':
        return RSASelfSigner(self._ca_cert, self._ca_key, serials, self._clock)

    def _ca_key_data(self) -> bytes:
        return _encode_key(self._ca_key)


def generate_self_signer(common_name: str = Config.api.CA_COMMON_NAME) -> RSASelfSigner:
    """Create a brand new root CA with a self-signed certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(secrets.randbits(62) + 1)
        .not_valid_before(now)
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=True,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=False, encipher_only=False, decipher_only=False
        ), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return RSASelfSigner(ca_cert, key)


def parse_ca(ca_cert_data: Optional[bytes], ca_key_data: Optional[bytes]) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    if not ca_cert_data or not ca_key_data:
        raise ValueError("missing ca.crt or ca.key")
    ca_cert = x509.load_pem_x509_certificate(ca_cert_data)
    ca_key = serialization.load_pem_private_key(ca_key_data, password=None)
    if not isinstance(ca_key, rsa.RSAPrivateKey):
        raise ValueError("ca.key is not an RSA private key")
    if ca_key.public_key().public_numbers() != ca_cert.public_key().public_numbers():
        raise ValueError("ca.key does not match ca.crt")
    return ca_cert, ca_key


def _has_owner_reference(secret: Dict[str, Any], owner_reference: Dict[str, Any]) -> bool:
    refs = (secret.get('metadata') or {}).get('ownerReferences') or []
    return any(ref.get('uid') == owner_reference.get('uid') for ref in refs)


def load_or_generate(core_v1_api, namespace: str, name: str,
                     owner_reference: Optional[Dict[str, Any]] = None,
                     durable_serials: bool = True) -> RSASelfSigner:
    """
    Load the CA from its secret, generating and storing a new one if absent.

    Args:
        core_v1_api: CoreV1Api used to read and write the CA secret
        namespace: Namespace of the CA secret
        name: Name of the CA secret
        owner_reference: Owner to attach to the CA secret
        durable_serials: Allocate serials from the secret instead of memory

    A corrupted CA raises CACorruptedError and is never replaced.
    """
    for _ in range(CREATE_RACE_ATTEMPTS):
        try:
            secret = KubernetesUtils.as_dict(core_v1_api.read_namespaced_secret(name, namespace))
        except ApiException as e:
            if not KubernetesUtils.is_not_found(e):
                raise SigningError(f"Failed to read CA from secret {namespace}/{name}: {e}") from e
            secret = None

        if secret is not None:
            try:
                ca_cert, ca_key = parse_ca(
                    KubernetesUtils.decode_data(secret, TLS_CA_CERT),
                    KubernetesUtils.decode_data(secret, TLS_CA_KEY)
                )
            except ValueError as e:
                logger.error(f"CA secret {namespace}/{name} cannot be parsed: {e}")
                raise CACorruptedError(namespace, name, str(e)) from e

            if owner_reference and not _has_owner_reference(secret, owner_reference):
                secret['metadata']['ownerReferences'] = [owner_reference]
                core_v1_api.replace_namespaced_secret(name, namespace, secret)
                logger.info(f"Added owner reference to CA secret {namespace}/{name}")

            logger.info(f"Loaded CA from secret {namespace}/{name}")
            signer = RSASelfSigner(ca_cert, ca_key)
        else:
            signer = generate_self_signer()
            if _dump_ca_secret(core_v1_api, namespace, name, signer, owner_reference):
                # another writer created the secret first, adopt theirs
                logger.info(f"CA secret {namespace}/{name} was created concurrently, reloading")
                continue
            logger.info(f"Generated new CA into secret {namespace}/{name}")

        if not durable_serials:
            return signer
        floor = signer.ca_certificates()[0].serial_number + 1
        return signer.with_serials(SecretSerialCounter(core_v1_api, namespace, name, floor))
    raise SigningError(f"Failed to load or create CA secret {namespace}/{name}")


def _dump_ca_secret(core_v1_api, namespace: str, name: str, signer: RSASelfSigner,
                    owner_reference: Optional[Dict[str, Any]]) -> bool:
    """Create the CA secret. Returns True if it already existed."""
    metadata = {'name': name, 'namespace': namespace}
    if owner_reference:
        metadata['ownerReferences'] = [owner_reference]
    secret = {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': metadata,
        'type': 'Opaque',
        'data': KubernetesUtils.encode_data({
            TLS_CA_CERT: signer.ca_data(),
            TLS_CA_KEY: signer._ca_key_data()
        })
    }
    try:
        core_v1_api.create_namespaced_secret(namespace, secret)
    except ApiException as e:
        if KubernetesUtils.is_already_exists(e):
            return True
        raise SigningError(f"Failed to dump generated CA secret {namespace}/{name}: {e}") from e
    return False
