from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class CertificateBundle:
    """The issued certificate, packaged for installation.

    The bundle lives in the run's scratch directory and is discarded together with it
    once the installer is done.
    """

    domain: str
    """The domain the certificate was issued for."""
    fullchain: str
    """The certificate chain as retrieved from the ACME server, PEM encoded."""
    pfx: bytes = field(repr=False)
    """The PKCS#12 container holding the chain and the certificate's private key."""
    password: str = field(repr=False)
    """The password that protects :attr:`pfx`."""
    path: Path = None
    """Where :attr:`pfx` was written to."""
