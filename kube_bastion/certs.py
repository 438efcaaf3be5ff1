"""Self-signed CA and serving certificate for the webhook."""

from __future__ import annotations

import base64
import datetime
import ipaddress
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import CertificateError

logger = logging.getLogger(__name__)

CA_CERT_FILE = "ca.crt"
CA_KEY_FILE = "ca.key"
CERT_FILE = "tls.crt"
KEY_FILE = "tls.key"

ORGANIZATION = "kube-bastion"
KEY_SIZE = 2048


def service_dns_names(service: str, namespace: str) -> list[str]:
    """All names the API server may use to reach an in-cluster service."""
    return [
        service,
        f"{service}.{namespace}",
        f"{service}.{namespace}.svc",
        f"{service}.{namespace}.svc.cluster.local",
    ]


@dataclass(frozen=True)
class TlsIdentity:
    ca_cert_pem: bytes
    ca_key_pem: bytes
    cert_pem: bytes
    key_pem: bytes
    cert_file: Path
    key_file: Path
    ca_file: Path

    @property
    def ca_bundle(self) -> str:
        """Base64 CA certificate, as expected by webhook client configs."""
        return base64.b64encode(self.ca_cert_pem).decode("utf-8")

    @property
    def not_valid_after(self) -> datetime.datetime:
        return x509.load_pem_x509_certificate(self.cert_pem).not_valid_after_utc


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _subject_alt_names(dns_names: Iterable[str]) -> list[x509.GeneralName]:
    alt_names: list[x509.GeneralName] = []
    for name in dns_names:
        try:
            alt_names.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            alt_names.append(x509.DNSName(name))
    return alt_names


def _san_values(cert: x509.Certificate) -> set[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return set()
    values = set(san.get_values_for_type(x509.DNSName))
    values.update(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    return values


class CertificateManager:
    """
    Keeps a CA and a serving certificate in ``cert_dir``.

    The certificate is regenerated only when ``ensure_identity`` finds it
    missing, expiring or not covering the requested names, or when
    ``rotate`` is called; there is no automatic rotation while serving.
    """

    def __init__(
        self,
        cert_dir: Path,
        ca_validity_days: int = 3650,
        cert_validity_days: int = 365,
        renewal_margin_days: int = 30,
    ):
        self.cert_dir = Path(cert_dir)
        self.ca_validity = datetime.timedelta(days=ca_validity_days)
        self.cert_validity = datetime.timedelta(days=cert_validity_days)
        self.renewal_margin = datetime.timedelta(days=renewal_margin_days)

    def _path(self, name: str) -> Path:
        return self.cert_dir / name

    def ensure_identity(self, dns_names: list[str]) -> TlsIdentity:
        """Reuse valid material from ``cert_dir`` or generate and persist a new CA and certificate."""
        if not dns_names:
            raise CertificateError("At least one DNS name is required")
        existing = self.load()
        if existing is not None and self._is_usable(existing, dns_names):
            logger.info(f"Reusing TLS identity from {self.cert_dir}")
            return existing
        return self.generate(dns_names)

    def rotate(self, dns_names: list[str], current: Optional[TlsIdentity] = None) -> Optional[TlsIdentity]:
        """Force new material; on failure keep serving with ``current``."""
        try:
            return self.generate(dns_names)
        except CertificateError as e:
            if current is None:
                raise
            logger.error(f"Certificate rotation failed, keeping current identity: {e}")
            return current

    def load(self) -> Optional[TlsIdentity]:
        paths = [self._path(name) for name in (CA_CERT_FILE, CA_KEY_FILE, CERT_FILE, KEY_FILE)]
        if not all(path.is_file() for path in paths):
            return None
        try:
            ca_cert, ca_key, cert, key = (path.read_bytes() for path in paths)
        except OSError as e:
            raise CertificateError(f"Could not read TLS material from {self.cert_dir}: {e}") from e
        return TlsIdentity(
            ca_cert_pem=ca_cert,
            ca_key_pem=ca_key,
            cert_pem=cert,
            key_pem=key,
            cert_file=self._path(CERT_FILE),
            key_file=self._path(KEY_FILE),
            ca_file=self._path(CA_CERT_FILE),
        )

    def _is_usable(self, identity: TlsIdentity, dns_names: list[str]) -> bool:
        try:
            ca_cert = x509.load_pem_x509_certificate(identity.ca_cert_pem)
            cert = x509.load_pem_x509_certificate(identity.cert_pem)
            key = serialization.load_pem_private_key(identity.key_pem, password=None)
        except ValueError as e:
            logger.warning(f"Existing TLS material is unreadable, regenerating: {e}")
            return False

        renew_at = _now() + self.renewal_margin
        if ca_cert.not_valid_after_utc <= renew_at or cert.not_valid_after_utc <= renew_at:
            logger.info("Existing TLS material expires soon, regenerating")
            return False
        if not set(dns_names) <= _san_values(cert):
            logger.info("Existing certificate does not cover all service names, regenerating")
            return False
        if key.public_key().public_numbers() != cert.public_key().public_numbers():
            logger.warning("Existing certificate does not match its key, regenerating")
            return False
        try:
            ca_cert.public_key().verify(
                cert.signature,
                cert.tbs_certificate_bytes,
                padding.PKCS1v15(),
                cert.signature_hash_algorithm,
            )
        except InvalidSignature:
            logger.warning("Existing certificate was not issued by the stored CA, regenerating")
            return False
        return True

    def generate(self, dns_names: list[str]) -> TlsIdentity:
        logger.info(f"Generating TLS identity for {', '.join(dns_names)}")
        try:
            ca_key = _generate_key()
            ca_name = x509.Name(
                [
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                    x509.NameAttribute(NameOID.COMMON_NAME, f"{ORGANIZATION}-ca"),
                ]
            )
            now = _now()
            ca_cert = (
                x509.CertificateBuilder()
                .subject_name(ca_name)
                .issuer_name(ca_name)
                .public_key(ca_key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - datetime.timedelta(minutes=5))
                .not_valid_after(now + self.ca_validity)
                .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=True,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
                .sign(ca_key, hashes.SHA256())
            )

            key = _generate_key()
            cert = (
                x509.CertificateBuilder()
                .subject_name(
                    x509.Name(
                        [
                            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                            x509.NameAttribute(NameOID.COMMON_NAME, dns_names[0]),
                        ]
                    )
                )
                .issuer_name(ca_name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - datetime.timedelta(minutes=5))
                .not_valid_after(min(now + self.cert_validity, now + self.ca_validity))
                .add_extension(x509.SubjectAlternativeName(_subject_alt_names(dns_names)), critical=False)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
                )
                .sign(ca_key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Could not generate TLS material: {e}") from e

        identity = TlsIdentity(
            ca_cert_pem=ca_cert.public_bytes(serialization.Encoding.PEM),
            ca_key_pem=_key_pem(ca_key),
            cert_pem=cert.public_bytes(serialization.Encoding.PEM),
            key_pem=_key_pem(key),
            cert_file=self._path(CERT_FILE),
            key_file=self._path(KEY_FILE),
            ca_file=self._path(CA_CERT_FILE),
        )
        self._persist(identity)
        return identity

    def _persist(self, identity: TlsIdentity):
        files = {
            CA_CERT_FILE: (identity.ca_cert_pem, 0o644),
            CA_KEY_FILE: (identity.ca_key_pem, 0o600),
            CERT_FILE: (identity.cert_pem, 0o644),
            KEY_FILE: (identity.key_pem, 0o600),
        }
        try:
            self.cert_dir.mkdir(parents=True, exist_ok=True)
            for name, (content, mode) in files.items():
                path = self._path(name)
                tmp_path = path.with_name(f".{name}.tmp")
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.replace(tmp_path, path)
        except OSError as e:
            raise CertificateError(f"Could not write TLS material to {self.cert_dir}: {e}") from e
        logger.info(f"TLS identity written to {self.cert_dir}")
