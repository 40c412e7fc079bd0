from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple, Union

import structlog
from cryptography import x509

from ..errors import TrustBundleError

logger = structlog.get_logger("cache.tls")


@dataclass(frozen=True)
class TrustBundle:
    """
    Certificate authorities trusted for the Redis endpoint.

    Loaded once at startup and shared read-only by every pooled connection.
    `pem` is handed to redis-py as ssl_ca_data.
    """

    path: Path
    pem: str
    certificates: Tuple[x509.Certificate, ...] = field(repr=False)

    @property
    def subjects(self) -> Tuple[str, ...]:
        return tuple(cert.subject.rfc4514_string() for cert in self.certificates)


def load_trust_bundle(path: Union[str, Path]) -> TrustBundle:
    """
    Read and parse a PEM-encoded CA bundle.

    Raises TrustBundleError if the file is missing or unreadable, is not
    PEM, or contains no certificates.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise TrustBundleError(
            f"cannot read trust bundle {path}",
            cause=exc,
            path=str(path),
        ) from exc

    try:
        certificates = tuple(x509.load_pem_x509_certificates(data))
        pem = data.decode("utf-8")
    except ValueError as exc:
        raise TrustBundleError(
            f"trust bundle {path} does not contain valid PEM certificates",
            cause=exc,
            path=str(path),
        ) from exc

    if not certificates:
        raise TrustBundleError(f"trust bundle {path} is empty", path=str(path))

    bundle = TrustBundle(path=path, pem=pem, certificates=certificates)

    now = datetime.now(timezone.utc)
    for cert in certificates:
        if cert.not_valid_after_utc < now:
            logger.warning(
                "trust_bundle_certificate_expired",
                path=str(path),
                subject=cert.subject.rfc4514_string(),
                not_valid_after=cert.not_valid_after_utc.isoformat(),
            )

    logger.info(
        "trust_bundle_loaded",
        path=str(path),
        certificates=len(certificates),
        subjects=list(bundle.subjects),
    )
    return bundle
