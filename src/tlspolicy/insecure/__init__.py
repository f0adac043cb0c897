"""Insecure options for the TLS protocol-version policy layer."""

import warnings

from ..tlspolicy import CertificateInfo, CertificateValidator

__all__ = ["SecurityWarning", "allow_all_certificates"]


class SecurityWarning(Warning):
    """Warning regarding the insecurity caused by the use of this module"""


def _accept(info: CertificateInfo) -> bool:
    return True


def allow_all_certificates() -> CertificateValidator:
    """
    Returns a certificate validator that accepts any peer certificate,
    including none at all, regardless of the hostname it was issued for.

    This allows anyone positioned in the network to intercept connections
    between legitimate clients and servers without detection. It is meant
    for loopback testing against self-signed servers. A better option is to
    place the server's certificate in a dedicated TrustStore.
    """
    warnings.warn(
        "Accepting all certificates is insecure and should not be used in production.",
        SecurityWarning,
        stacklevel=2,
    )
    return _accept
