from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional

from gatekeep.logging import get_logger, hash_identifier

logger = get_logger(__name__)


class EmailService:
    """Plain-text transactional mail over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatekeep",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def deliver(self, destination: str, subject: str, payload: str) -> bool:
        """Send one message. Returns True if the relay accepted it."""
        recipient = hash_identifier(destination)
        if not self.is_configured:
            # Dev mode: record that a message would have gone out, never its body
            logger.info(
                "email_dev_mode",
                email_hash=recipient,
                subject=subject,
                body_length=len(payload),
            )
            return True

        try:
            msg = MIMEText(payload, "plain", "utf-8")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = destination

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                email_hash=recipient,
            )
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, destination, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, destination, msg.as_string())

            logger.info("email_sent", email_hash=recipient, subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                email_hash=recipient,
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                email_hash=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", email_hash=recipient)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                email_hash=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                email_hash=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                email_hash=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False
