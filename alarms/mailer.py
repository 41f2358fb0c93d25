from __future__ import annotations

import logging
import mimetypes
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional

from .event import EmailAction, Event

logger = logging.getLogger(__name__)


class SmtpMailer:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 25,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        bcc_address: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.bcc_address = bcc_address or sender
        self.timeout = timeout

    def send(self, event: Event, errors: List[str], allow_notify: bool = True) -> bool:
        """Send an email alarm. Problems are appended to ``errors``.

        Returns False if the email was not sent; errors may also be reported
        for an email which was sent, e.g. a failed copy.
        """
        action = event.action
        if not isinstance(action, EmailAction):
            raise TypeError(f"Event {event.id} is not an email alarm")
        sender = action.from_id or self.sender
        if not sender:
            errors.extend(["Failed to send email", "No 'From' email address is configured"])
            return False
        message = EmailMessage()
        message["From"] = sender
        message["To"] = ", ".join(action.addresses)
        message["Subject"] = action.subject
        if action.bcc and self.bcc_address:
            message["Bcc"] = self.bcc_address
        message.set_content(action.body)
        for attachment in action.attachments:
            if not self._attach(message, attachment, errors):
                return False

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.user:
                    smtp.starttls()
                    smtp.login(self.user, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email for event %s: %s", event.id, exc)
            errors.extend(["Failed to send email", str(exc)])
            return False
        logger.info("Email sent for event %s to %s", event.id, message["To"])
        if event.copy_to_organizer and allow_notify:
            logger.debug("Organizer copy requested for event %s", event.id)
        return True

    @staticmethod
    def _attach(message: EmailMessage, attachment: str, errors: List[str]) -> bool:
        path = Path(attachment).expanduser()
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.error("Error attaching file %s: %s", attachment, exc)
            errors.extend(["Failed to send email", f"Error attaching file: {attachment}"])
            return False
        ctype, encoding = mimetypes.guess_type(path.name)
        if ctype is None or encoding is not None:
            ctype = "application/octet-stream"
        maintype, subtype = ctype.split("/", 1)
        message.add_attachment(data, maintype=maintype, subtype=subtype, filename=path.name)
        return True
