import asyncio
import logging
from dataclasses import dataclass
from email import message_from_bytes, policy
from email.errors import MessageError

from aiosmtpd.smtp import SMTP, Envelope, Session

from config import MAIL_DOMAIN, MAIL_MAX_MESSAGE_BYTES
from services.email_service import Notifier, deliver_code
from services.otp_service import CodeStore

logger = logging.getLogger("email_support_api.smtp")


@dataclass(frozen=True)
class InboundMail:
    sender: str | None
    subject: str | None


def parse_inbound(raw: bytes) -> InboundMail:
    """Parse a complete message and pull out the first From address."""
    message = message_from_bytes(raw, policy=policy.default)

    sender = None
    from_header = message["From"]
    if from_header is not None:
        try:
            addresses = from_header.addresses
        except (AttributeError, MessageError, ValueError):
            addresses = ()
        for address in addresses:
            if "@" in address.addr_spec:
                sender = address.addr_spec
                break

    subject = message["Subject"]
    return InboundMail(sender=sender, subject=str(subject) if subject else None)


class DoorCodeHandler:
    """
        aiosmtpd handler for mail sent to the door-code mailbox.

        Anyone may send mail here: no AUTH and no STARTTLS are offered. Any
        local part of the configured domain is accepted; other domains are
        refused at RCPT, before the body is transferred. Each message with a
        usable From address gets a fresh code mailed back to that address.
    """

    def __init__(self, store: CodeStore, notifier: Notifier, domain: str = MAIL_DOMAIN):
        self.store = store
        self.notifier = notifier
        self.domain = domain.lower()

    def accepts(self, recipient: str) -> bool:
        return recipient.lower().endswith(f"@{self.domain}")

    async def handle_RCPT(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        rcpt_options: list[str],
    ) -> str:
        if not self.accepts(address):
            logger.warning(f"Rejected recipient {address}: not @{self.domain}")
            return f"550 5.7.1 We only accept mail for @{self.domain}"

        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        try:
            await self.process(envelope.content or b"")
        except Exception:
            logger.exception("Error processing email")

        return "250 Message accepted for delivery"

    async def process(self, raw: bytes | str) -> str | None:
        """Issue and mail back a code for one received message; return the code."""
        if isinstance(raw, str):
            raw = raw.encode("utf-8", errors="surrogateescape")

        try:
            inbound = parse_inbound(raw)
        except (MessageError, ValueError, UnicodeError) as e:
            logger.warning(f"Could not parse inbound message: {e}")
            return None

        logger.info(
            f'Received email from {inbound.sender or "unknown"} subject: "{inbound.subject or "(none)"}"'
        )

        if not inbound.sender:
            logger.info("No sender address found, skipping reply")
            return None

        code = self.store.issue(inbound.sender)
        await deliver_code(self.notifier, self.store, inbound.sender, code)
        return code


async def start_mail_intake(
    handler: DoorCodeHandler, host: str, port: int
) -> asyncio.AbstractServer:
    """Listen for SMTP on the running loop. Raises OSError if the port cannot be bound."""
    loop = asyncio.get_running_loop()

    def factory() -> SMTP:
        return SMTP(
            handler,
            hostname=handler.domain,
            data_size_limit=MAIL_MAX_MESSAGE_BYTES,
            auth_required=False,
            loop=loop,
        )

    server = await loop.create_server(factory, host=host, port=port)
    logger.info(f"Mail server listening on port {port}")
    logger.info(f"Accepting mail for *@{handler.domain}")
    return server
