import logging
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Protocol

import aiosmtplib
import dns.asyncresolver
import dns.exception
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import (
    MAIL_DOMAIN,
    MAIL_SENDER_NAME,
    OUTBOUND_TIMEOUT_SECONDS,
    RODNEY_MAILBOX,
    SMTP_RELAY_HOST,
    SMTP_RELAY_PASS,
    SMTP_RELAY_PORT,
    SMTP_RELAY_USER,
)
from services.otp_service import CodeStore

logger = logging.getLogger("email_support_api.email")

# Set up Jinja env
env = Environment(
    loader=FileSystemLoader(Path(__file__).parent / "templates"),
    autoescape=select_autoescape(["html", "xml"]),
)

template = env.get_template("door_code.html.jinja")

DIRECT_DELIVERY_PORT = 25


class Notifier(Protocol):
    async def send_code(self, to_address: str, code: str, expires_in: int) -> str | None:
        ...


def group_code(code: str, size: int = 3) -> str:
    return " ".join(code[i : i + size] for i in range(0, len(code), size))


def compose_code_email(to_address: str, code: str, expires_in: int) -> EmailMessage:
    # Render Jinja email template
    html_body = template.render(
        grouped_code=group_code(code),
        expires_in=expires_in,
        sender_name=MAIL_SENDER_NAME,
    )

    text_body = f"{code}\n\nThis code expires in {expires_in} seconds. Hurry up."

    message = EmailMessage()
    message["From"] = formataddr((MAIL_SENDER_NAME, f"{RODNEY_MAILBOX}@{MAIL_DOMAIN}"))
    message["To"] = to_address
    message["Subject"] = "Your door code"
    message["Message-ID"] = make_msgid(domain=MAIL_DOMAIN)
    message.set_content(text_body)
    message.add_alternative(html_body, subtype="html")
    return message


async def resolve_mail_hosts(domain: str) -> list[str]:
    """Return the MX hosts for a domain, most preferred first."""
    try:
        answer = await dns.asyncresolver.resolve(domain, "MX")
    except dns.exception.DNSException:
        logger.warning(f"MX lookup failed for {domain}, falling back to the domain itself")
        return [domain]

    records = sorted(answer, key=lambda record: record.preference)
    hosts = [record.exchange.to_text(omit_final_dot=True) for record in records]
    return [host for host in hosts if host] or [domain]


class SMTPCodeMailer:
    """Deliver door codes via an SMTP relay, or directly to the recipient's MX."""

    def __init__(
        self,
        relay_host: str | None = SMTP_RELAY_HOST,
        relay_port: int = SMTP_RELAY_PORT,
        relay_user: str | None = SMTP_RELAY_USER,
        relay_password: str = str(SMTP_RELAY_PASS),
        timeout: float = OUTBOUND_TIMEOUT_SECONDS,
    ):
        self.relay_host = relay_host
        self.relay_port = relay_port
        self.relay_user = relay_user
        self.relay_password = relay_password
        self.timeout = timeout

    def describe(self) -> str:
        if self.relay_host:
            return f"relay {self.relay_host}:{self.relay_port}"
        return "direct delivery (no relay configured)"

    async def send_code(self, to_address: str, code: str, expires_in: int) -> str | None:
        message = compose_code_email(to_address, code, expires_in)

        if self.relay_host:
            await aiosmtplib.send(
                message,
                hostname=self.relay_host,
                port=self.relay_port,
                username=self.relay_user or None,
                password=self.relay_password or None,
                use_tls=self.relay_port == 465,
                timeout=self.timeout,
            )
            return message["Message-ID"]

        domain = to_address.rpartition("@")[2]
        last_error: Exception | None = None
        for host in await resolve_mail_hosts(domain):
            try:
                await aiosmtplib.send(
                    message,
                    hostname=host,
                    port=DIRECT_DELIVERY_PORT,
                    local_hostname=MAIL_DOMAIN,
                    timeout=self.timeout,
                )
                return message["Message-ID"]
            except (aiosmtplib.SMTPException, OSError) as e:
                logger.warning(f"Direct delivery to {host} failed for {to_address}: {e}")
                last_error = e

        raise last_error or aiosmtplib.SMTPException(f"No mail host found for {domain}")


async def deliver_code(
    notifier: Notifier, store: CodeStore, to_address: str, code: str
) -> bool:
    """
        Send a freshly issued code to its requester.

        Failures are logged and swallowed. The code stays in the store either
        way, so the requester can still redeem it if it reaches them by any
        other route.
    """
    expires_in = store.remaining_seconds(code)
    if expires_in is None:
        expires_in = store.ttl_seconds

    try:
        message_id = await notifier.send_code(to_address, code, expires_in)
    except Exception as e:
        logger.error(f"Failed to send reply to {to_address}: {e}")
        return False

    logger.info(f"Reply sent to {to_address}: {message_id or 'ok'}")
    return True
