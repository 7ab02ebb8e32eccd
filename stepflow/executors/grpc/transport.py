"""
gRPC transport - Channel construction, TLS credentials and call metadata.
"""

import logging
import ssl
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import grpc
from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

logger = logging.getLogger(__name__)

DEFAULT_TLS_PORT = 443


@dataclass
class TLSOptions:
    """Rendered TLS settings of a gRPC step."""
    enabled: bool = False
    skip_verify: bool = False
    ca_cert: str = ""
    client_cert: str = ""
    client_key: str = ""
    server_name: str = ""


def build_metadata(values: Dict[str, str]) -> List[Tuple[str, str]]:
    """
    Turn rendered header values into call metadata.

    Keys are trimmed and lowercased, blank keys dropped, result sorted by key.
    """
    metadata = []
    for key, value in values.items():
        name = key.strip().lower()
        if not name:
            continue
        metadata.append((name, value))
    return sorted(metadata)


def split_target(target: str) -> Tuple[str, int]:
    """
    Host and port of a dial target such as 'host:port' or 'dns:///host:port'.
    """
    address = target
    for prefix in ("dns:///", "dns:", "ipv4:", "ipv6:"):
        if address.startswith(prefix):
            address = address[len(prefix):]
            break

    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else DEFAULT_TLS_PORT

    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_TLS_PORT
    return host, int(port)


def _read_file(path: str, label: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ValueError(f"read grpc {label} \"{path}\": {e}") from e


def load_ca_bundle(path: str) -> bytes:
    """
    Read a PEM CA bundle, requiring at least one certificate.

    Raises:
        ValueError: If the file is unreadable or holds no certificates
    """
    data = _read_file(path, "ca_cert")
    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError:
        certificates = []
    if not certificates:
        raise ValueError(f"grpc ca_cert \"{path}\" contains no valid certificates")
    return data


def certificate_host_name(pem: str) -> Optional[str]:
    """First DNS name of a certificate, falling back to its common name."""
    certificate = x509.load_pem_x509_certificate(pem.encode("ascii"))
    try:
        san = certificate.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        names = san.value.get_values_for_type(x509.DNSName)
        if names:
            return names[0]
    except x509.ExtensionNotFound:
        pass

    common_names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if common_names:
        return str(common_names[0].value)
    return None


def fetch_server_certificate(target: str, timeout: float) -> str:
    """
    Fetch the server's certificate without verifying it.

    Used by skip_tls_verify: the fetched certificate becomes the trust root
    for the channel. Meant for development servers with self-signed
    certificates.
    """
    host, port = split_target(target)
    try:
        return ssl.get_server_certificate((host, port), timeout=timeout)
    except OSError as e:
        raise ConnectionError(f"fetch server certificate from {host}:{port}: {e}") from e


def create_channel(target: str, tls: TLSOptions, timeout: float) -> grpc.Channel:
    """
    Create a (not yet connected) channel for a step.

    Args:
        target: Dial target
        tls: TLS settings (plaintext when not enabled)
        timeout: Budget for fetching the server certificate with skip_verify

    Returns:
        grpc.Channel

    Raises:
        ValueError: If the TLS settings are invalid
        ConnectionError: If the server certificate cannot be fetched
    """
    if not tls.enabled:
        return grpc.insecure_channel(target)

    root_certificates = None
    private_key = None
    certificate_chain = None
    server_name = tls.server_name

    if tls.ca_cert:
        root_certificates = load_ca_bundle(tls.ca_cert)

    if tls.client_cert or tls.client_key:
        if not tls.client_cert or not tls.client_key:
            raise ValueError("grpc client_cert and client_key must both be provided")
        certificate_chain = _read_file(tls.client_cert, "client_cert")
        private_key = _read_file(tls.client_key, "client_key")

    if tls.skip_verify:
        logger.warning(f"[grpc] skip_tls_verify set, trusting the certificate presented by {target}")
        pem = fetch_server_certificate(target, timeout)
        root_certificates = pem.encode("ascii")
        if not server_name:
            server_name = certificate_host_name(pem) or ""

    credentials = grpc.ssl_channel_credentials(
        root_certificates=root_certificates,
        private_key=private_key,
        certificate_chain=certificate_chain,
    )

    options = []
    if server_name:
        options.append(("grpc.ssl_target_name_override", server_name))

    return grpc.secure_channel(target, credentials, options=options)


def wait_for_ready(channel: grpc.Channel, timeout: float) -> None:
    """
    Block until the channel is connected.

    Raises:
        grpc.FutureTimeoutError: If the channel is not ready in time
    """
    grpc.channel_ready_future(channel).result(timeout=timeout)
