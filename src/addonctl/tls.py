"""Let's Encrypt issuance through certbot and inspection of issued certificates."""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePosixPath

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import ValidationError
from .runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)

LETS_ENCRYPT_LIVE_DIR = "/etc/letsencrypt/live"
_IPV4 = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}$")


@dataclass(frozen=True)
class CertificateInfo:
    """Facts extracted from an issued certificate."""

    subject: str | None
    issuer: str | None
    domains: tuple[str, ...]
    not_valid_before: datetime
    not_valid_after: datetime

    def days_remaining(self, now: datetime | None = None) -> int:
        """Return whole days until expiry (negative once expired)."""
        moment = now or datetime.now(tz=UTC)
        return (self.not_valid_after - moment).days

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "domains": list(self.domains),
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining(),
        }


def certificate_info(data: bytes) -> CertificateInfo:
    """Parse a PEM (or DER) certificate into :class:`CertificateInfo`."""
    try:
        cert = x509.load_pem_x509_certificate(data)
    except ValueError:
        cert = x509.load_der_x509_certificate(data)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        domains = tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        domains = ()
    return CertificateInfo(
        subject=_common_name(cert.subject),
        issuer=_common_name(cert.issuer),
        domains=domains,
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
    )


def can_issue_for(domain: str) -> bool:
    """Return ``False`` for names a public CA will not certify."""
    return bool(domain) and domain != "localhost" and not _IPV4.match(domain)


@dataclass(slots=True)
class CertbotProvider:
    """Obtain certificates with the certbot nginx plugin."""

    runner: CommandRunner
    live_dir: str = LETS_ENCRYPT_LIVE_DIR
    certbot_bin: str = "certbot"

    def issue_command(self, domain: str, *, email: str | None = None) -> str:
        """Return the certbot invocation for *domain*."""
        contact = email or f"admin@{domain}"
        return (
            f"{self.certbot_bin} --nginx -d {shlex.quote(domain)} --non-interactive "
            f"--agree-tos --email {shlex.quote(contact)} --redirect"
        )

    def issue(self, domain: str, *, email: str | None = None) -> CommandResult:
        """Request (or renew) a certificate and let certbot rewrite the vhost."""
        if not can_issue_for(domain):
            raise ValidationError(
                f"A public certificate cannot be issued for '{domain}'.",
                field="domain",
                suggestion="Disable TLS or use a registered domain name.",
            )
        result = self.runner.execute_privileged(self.issue_command(domain, email=email))
        result.check(f"Issuing certificate for {domain}")
        LOGGER.info("Certificate issued for %s on %s", domain, self.runner.target)
        return result

    def certificate_path(self, domain: str) -> str:
        """Return the full-chain path certbot writes for *domain*."""
        return str(PurePosixPath(self.live_dir) / domain / "fullchain.pem")

    def inspect(self, domain: str) -> CertificateInfo | None:
        """Return details of the installed certificate, or ``None`` when absent."""
        text = self.runner.read_text(self.certificate_path(domain), privileged=True)
        if not text:
            return None
        try:
            return certificate_info(text.encode("utf-8"))
        except ValueError as exc:
            LOGGER.warning("Certificate for %s could not be parsed: %s", domain, exc)
            return None


def _common_name(name: x509.Name) -> str | None:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", errors="replace")


__all__ = [
    "CertbotProvider",
    "CertificateInfo",
    "LETS_ENCRYPT_LIVE_DIR",
    "can_issue_for",
    "certificate_info",
]
