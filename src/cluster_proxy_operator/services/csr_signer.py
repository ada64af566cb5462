"""Signing callback used by the agent registration flow for its CSRs."""
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from datetime import timedelta
from typing import Any, Callable, Dict, Optional
import base64

from cluster_proxy_operator.exceptions import SigningError
from cluster_proxy_operator.services.self_signer import LeafConfig, SelfSigner, client_auth_usage
from cluster_proxy_operator.utils.log_config import setup_logger

logger = setup_logger('csr-signer')

CSRSigner = Callable[[Dict[str, Any]], Optional[bytes]]


def sign_csr(signer: SelfSigner, request_pem: bytes, validity: timedelta) -> bytes:
    """Sign the subject and DNS/IP names of a PEM CSR as a client certificate."""
    try:
        csr = x509.load_pem_x509_csr(request_pem)
    except ValueError as e:
        raise SigningError(f"Invalid certificate signing request: {e}") from e
    if not csr.is_signature_valid:
        raise SigningError("Certificate signing request signature is invalid")

    common_names = csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    organizations = csr.subject.get_attributes_for_oid(x509.NameOID.ORGANIZATION_NAME)
    hostnames = []
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        hostnames = san.get_values_for_type(x509.DNSName) + \
            [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass

    cfg = LeafConfig.from_hostnames(
        common_names[0].value if common_names else "",
        hostnames,
        organization=[o.value for o in organizations]
    )
    certificate = signer.sign_public_key(cfg, csr.public_key(), validity, client_auth_usage)
    return certificate.public_bytes(serialization.Encoding.PEM)


def custom_signer_with_expiry(signer_name: str, signer: SelfSigner, validity: timedelta) -> CSRSigner:
    """
    Build a CSR signing callback restricted to one signer name.

    The callback takes a CertificateSigningRequest as a dict and returns the
    PEM certificate, or None when the request targets another signer.
    """
    def sign(csr: Dict[str, Any]) -> Optional[bytes]:
        spec = csr.get('spec') or {}
        if spec.get('signerName') != signer_name:
            return None
        name = (csr.get('metadata') or {}).get('name', '')
        try:
            request = base64.b64decode(spec.get('request', ''), validate=True)
            certificate = sign_csr(signer, request, validity)
        except (ValueError, SigningError) as e:
            logger.error(f"Failed to sign CSR {name}: {e}")
            return None
        logger.info(f"Signed CSR {name} for {signer_name}")
        return certificate

    return sign
