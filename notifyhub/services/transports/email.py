from __future__ import annotations

from email.message import EmailMessage
from email.utils import formatdate, make_msgid
import logging
import re
from typing import Any, Callable

import aiosmtplib

from notifyhub.core.errors import TransportError, TransportPermanentError
from notifyhub.domain.delivery import DeliveryTask, TransportReceipt


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(address: str) -> bool:
    return bool(_EMAIL_RE.match(address.strip()))


def build_message(task: DeliveryTask, *, mail_from: str, domain: str) -> EmailMessage:
    payload = task.payload
    message = EmailMessage()
    message["From"] = mail_from
    message["To"] = str(payload["email"]).strip()
    message["Subject"] = str(payload.get("subject") or payload.get("title") or task.notification_type)
    message["Message-ID"] = make_msgid(idstring=task.id, domain=domain)
    message["Date"] = formatdate(usegmt=True)
    if task.priority.value in {"urgent", "high"}:
        message["X-Priority"] = "1"
    text = str(payload.get("body") or payload.get("message") or "")
    message.set_content(text)
    html = payload.get("html")
    if isinstance(html, str) and html:
        message.add_alternative(html, subtype="html")
    return message


class EmailTransport:
    """Deliver email over SMTP with aiosmtplib.

    Refused recipients and malformed addresses are permanent; connection
    problems and 4xx SMTP replies are transient.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        mail_from: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        start_tls: bool = True,
        timeout_s: float = 10.0,
        smtp_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._mail_from = mail_from
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._start_tls = start_tls
        self._timeout_s = timeout_s
        self._smtp_factory = smtp_factory or self._default_smtp

    def _default_smtp(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self._host,
            port=self._port,
            use_tls=self._use_tls,
            start_tls=self._start_tls,
            timeout=self._timeout_s,
        )

    async def send(self, task: DeliveryTask) -> TransportReceipt:
        recipient = task.payload.get("email")
        if not isinstance(recipient, str) or not is_valid_email(recipient):
            raise TransportPermanentError(f"invalid recipient address: {recipient!r}", reason="invalid_recipient")
        domain = self._mail_from.rsplit("@", 1)[-1] or "notifyhub.local"
        message = build_message(task, mail_from=self._mail_from, domain=domain)
        smtp = self._smtp_factory()
        try:
            async with smtp:
                if self._username and self._password:
                    await smtp.login(self._username, self._password)
                errors, response = await smtp.send_message(message)
        except aiosmtplib.SMTPRecipientsRefused as exc:
            raise TransportPermanentError(f"all recipients refused: {exc}", reason="recipients_refused") from exc
        except aiosmtplib.SMTPAuthenticationError as exc:
            raise TransportPermanentError(f"smtp authentication failed: {exc}", reason="misconfiguration") from exc
        except aiosmtplib.SMTPResponseException as exc:
            if 500 <= int(exc.code) < 600:
                raise TransportPermanentError(f"smtp rejected message: {exc}", reason=f"smtp_{exc.code}") from exc
            raise TransportError(f"smtp deferred message: {exc}", reason=f"smtp_{exc.code}") from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise TransportError(f"smtp unavailable: {exc}", reason="smtp_unavailable") from exc
        if errors:
            logger.warning("smtp_partial_refusal task_id=%s refused=%s", task.id, sorted(errors))
            raise TransportPermanentError(f"recipient refused: {sorted(errors)}", reason="recipients_refused")
        return TransportReceipt(
            provider_message_id=str(message["Message-ID"]),
            provider_timestamp=str(message["Date"]),
            raw={"response": str(response)},
        )
