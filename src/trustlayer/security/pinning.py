"""
TrustLayer Certificate Pinning
Validates the TLS peer certificate of the store against a pinned set of
SHA-256 fingerprints. The pin set is the deciding check: a self-signed or
privately issued store certificate is accepted when its fingerprint is
pinned. CA verification can be required on top with require_ca.

Validation runs inside the TLS handshake, so a request is never written to
a connection whose certificate is not pinned. Every rejection, CA failures
included, surfaces as CertificatePinningError.
"""

import functools
import hashlib
import logging
import re
import ssl
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterable, List, Optional

from trustlayer.core.logging import LoggerMixin
from trustlayer.security.audit import AuditLogger
from trustlayer.security.models import AuditAction, Severity


_HEX_FINGERPRINT = re.compile(r"^[0-9A-F]{64}$")


def compute_fingerprint(der: bytes) -> str:
    """SHA-256 of a DER certificate as colon separated uppercase hex"""
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def normalize_fingerprint(value: str) -> str:
    """Accept AA:BB..., aabb... or 'AA BB ...' and return the canonical form"""
    compact = re.sub(r"[\s:]", "", value or "").upper()
    if not _HEX_FINGERPRINT.match(compact):
        raise ValueError(f"Not a SHA-256 fingerprint: {value!r}")
    return ":".join(compact[i:i + 2] for i in range(0, len(compact), 2))


def fetch_server_fingerprint(hostname: str, port: int = 443, timeout: float = 10.0) -> str:
    """Fingerprint of the certificate a live server presents, for pin setup"""
    pem = ssl.get_server_certificate((hostname, port), timeout=timeout)
    return compute_fingerprint(ssl.PEM_cert_to_DER_cert(pem))


class CertificatePinningError(ssl.SSLCertVerificationError):
    """The peer certificate did not match the pinned identity"""

    def __init__(self, message: str, hostname: Optional[str] = None, fingerprint: Optional[str] = None):
        super().__init__(message)
        self.strerror = message
        self.verify_message = message
        self.hostname = hostname
        self.fingerprint = fingerprint

    def __str__(self) -> str:
        return self.args[0] if self.args else "Certificate pinning failed"


@dataclass(frozen=True)
class CertificateValidationResult:
    valid: bool
    hostname: Optional[str]
    fingerprint: Optional[str]
    reason: Optional[str] = None


class CertificatePinner(LoggerMixin):
    """Pinned hostname with one or more accepted certificate fingerprints"""

    MAX_PENDING_FAILURES = 100

    def __init__(
        self,
        hostname: str,
        fingerprints: Iterable[str] = (),
        audit: Optional[AuditLogger] = None,
        allow_all: bool = False,
        require_ca: bool = False,
    ):
        self.hostname = hostname.lower()
        self._fingerprints = {normalize_fingerprint(f) for f in fingerprints}
        self.audit = audit
        self.allow_all = allow_all
        self.require_ca = require_ca
        self._pending: Deque[CertificateValidationResult] = deque(maxlen=self.MAX_PENDING_FAILURES)
        self._reporting = False

        if allow_all:
            self.logger.critical(
                "CERTIFICATE PINNING DISABLED: all certificates are accepted. "
                "Development use only, never enable in production."
            )
        elif not self._fingerprints:
            self.logger.warning(f"No fingerprints pinned for {self.hostname}; every connection will be rejected")

    @property
    def fingerprints(self) -> List[str]:
        return sorted(self._fingerprints)

    @property
    def pending_failures(self) -> List[CertificateValidationResult]:
        return list(self._pending)

    def validate(self, der: Optional[bytes], hostname: Optional[str]) -> CertificateValidationResult:
        """Accept iff the hostname is the pinned one and the fingerprint is pinned"""
        fingerprint = compute_fingerprint(der) if der else None

        if self.allow_all:
            self.logger.critical(f"Pinning bypassed for {hostname} (allow_all is enabled)")
            return CertificateValidationResult(True, hostname, fingerprint, "pinning disabled")

        if der is None:
            return self._reject(hostname, None, "peer presented no certificate")
        if not hostname or hostname.lower() != self.hostname:
            return self._reject(hostname, fingerprint, f"hostname is not pinned (expected {self.hostname})")
        if fingerprint not in self._fingerprints:
            return self._reject(hostname, fingerprint, "fingerprint is not in the pinned set")

        return CertificateValidationResult(True, hostname, fingerprint)

    def enforce(self, der: Optional[bytes], hostname: Optional[str]) -> None:
        """Raise CertificatePinningError unless validate() accepts the peer"""
        result = self.validate(der, hostname)
        if not result.valid:
            raise CertificatePinningError(
                f"Certificate pinning failed for {hostname}: {result.reason}",
                hostname=hostname,
                fingerprint=result.fingerprint,
            )

    async def add_fingerprint(self, fingerprint: str, actor: Optional[str] = None) -> bool:
        """Pin an additional certificate, e.g. ahead of a server rotation"""
        normalized = normalize_fingerprint(fingerprint)
        if normalized in self._fingerprints:
            return False
        self._fingerprints.add(normalized)
        self.logger.info(f"Pinned fingerprint added for {self.hostname}: {normalized}")
        await self._audit_change(AuditAction.CERTIFICATE_FINGERPRINT_ADDED, normalized, actor)
        return True

    async def remove_fingerprint(self, fingerprint: str, actor: Optional[str] = None) -> bool:
        """Unpin a retired certificate; the last pin cannot be removed"""
        normalized = normalize_fingerprint(fingerprint)
        if normalized not in self._fingerprints:
            return False
        if len(self._fingerprints) == 1:
            raise ValueError("Cannot remove the last pinned fingerprint")
        self._fingerprints.discard(normalized)
        self.logger.info(f"Pinned fingerprint removed for {self.hostname}: {normalized}")
        await self._audit_change(AuditAction.CERTIFICATE_FINGERPRINT_REMOVED, normalized, actor)
        return True

    async def report_pending_failures(self) -> int:
        """
        Write queued rejections to the audit log. Failures raised while
        reporting stay queued for the next call.
        """
        if self.audit is None or self._reporting or not self._pending:
            return 0

        self._reporting = True
        failures = list(self._pending)
        self._pending.clear()
        try:
            for failure in failures:
                await self.audit.log_security_event(
                    AuditAction.CERTIFICATE_PINNING_FAILURE,
                    Severity.CRITICAL,
                    f"Certificate pinning failed for {failure.hostname}: {failure.reason}",
                    metadata={
                        "hostname": failure.hostname,
                        "pinned_hostname": self.hostname,
                        "fingerprint": failure.fingerprint,
                        "reason": failure.reason,
                    },
                )
        finally:
            self._reporting = False
        return len(failures)

    def reject_verification(
        self, hostname: Optional[str], error: ssl.SSLCertVerificationError
    ) -> CertificatePinningError:
        """Queue a CA verification failure and turn it into a pinning error"""
        detail = getattr(error, "verify_message", None) or str(error)
        result = self._reject(hostname, None, f"certificate verification failed: {detail}")
        return CertificatePinningError(
            f"Certificate pinning failed for {hostname}: {result.reason}",
            hostname=hostname,
        )

    def create_ssl_context(self) -> ssl.SSLContext:
        """
        Context whose TLS objects enforce the pins once the handshake
        completes. CA and hostname checks only run when require_ca is set.
        """
        context = ssl.create_default_context()
        if self.allow_all or not self.require_ca:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if self.allow_all:
            return context

        pinner = self

        class PinnedSSLObject(ssl.SSLObject):
            def do_handshake(self) -> None:
                pinner._complete_handshake(self, super().do_handshake)

        class PinnedSSLSocket(ssl.SSLSocket):
            def do_handshake(self, block: bool = False) -> None:
                pinner._complete_handshake(self, functools.partial(super().do_handshake, block))

        context.sslobject_class = PinnedSSLObject
        context.sslsocket_class = PinnedSSLSocket
        return context

    def _complete_handshake(self, tls, handshake: Callable[[], None]) -> None:
        try:
            handshake()
        except CertificatePinningError:
            raise
        except ssl.SSLCertVerificationError as e:
            raise self.reject_verification(tls.server_hostname, e) from e
        self.enforce(tls.getpeercert(binary_form=True), tls.server_hostname)

    def _reject(
        self,
        hostname: Optional[str],
        fingerprint: Optional[str],
        reason: str,
    ) -> CertificateValidationResult:
        result = CertificateValidationResult(False, hostname, fingerprint, reason)
        self.log_with_context(
            logging.CRITICAL,
            f"CERTIFICATE_PINNING_FAILURE for {hostname}: {reason}",
            {"hostname": hostname, "fingerprint": fingerprint, "pinned_hostname": self.hostname},
        )
        self._pending.append(result)
        return result

    async def _audit_change(self, action: AuditAction, fingerprint: str, actor: Optional[str]) -> None:
        if self.audit is None:
            return
        await self.audit.log_admin_action(
            action,
            actor=actor or "system",
            target=self.hostname,
            metadata={"fingerprint": fingerprint, "pinned_count": len(self._fingerprints)},
        )
