"""
Mail Service

Delivers the verification code and password reset emails over SMTP.
Delivery failures raise ``MailDeliveryError``; callers decide whether that
fails the request (it never does for signup, see auth_service).

Bodies are rendered from templates; member-supplied values are escaped in
the HTML parts.
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

from jinja2 import DictLoader, Environment, select_autoescape

from core.config import settings
from core.exceptions import MailDeliveryError, UpstreamUnavailableError
from core.retry import call_with_retry
import logging

logger = logging.getLogger(__name__)

EMAIL_TEMPLATES = {
    "verify_code.html": (
        "<p>Hi {{ name }},</p>"
        "<p>Your verification code is <strong>{{ code }}</strong>.</p>"
        "<p>It expires in {{ minutes }} minutes. If you did not sign up, ignore this email.</p>"
    ),
    "verify_code.txt": (
        "Hi {{ name }},\n\n"
        "Your verification code is {{ code }}.\n"
        "It expires in {{ minutes }} minutes. If you did not sign up, ignore this email.\n"
    ),
    "password_reset.html": (
        "<p>Hi {{ name }},</p>"
        "<p><a href=\"{{ reset_url }}\">Reset your password</a>. "
        "The link works once and expires in {{ minutes }} minutes.</p>"
        "<p>If you did not ask for this, you can ignore this email.</p>"
    ),
    "password_reset.txt": (
        "Hi {{ name }},\n\n"
        "Reset your password: {{ reset_url }}\n"
        "The link works once and expires in {{ minutes }} minutes.\n"
        "If you did not ask for this, you can ignore this email.\n"
    ),
}

jinja_env = Environment(
    loader=DictLoader(EMAIL_TEMPLATES),
    autoescape=select_autoescape(["html"]),
    keep_trailing_newline=True,
)


def render_email(name: str, /, **context) -> str:
    return jinja_env.get_template(name).render(**context)


class MailService:
    """Service for sending transactional emails"""

    def __init__(self):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED
        self.timeout = settings.MAIL_TIMEOUT_S

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
            server.starttls()
            if self.smtp_username and self.smtp_password:
                server.login(self.smtp_username, self.smtp_password)
            server.send_message(msg)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> None:
        """
        Send an email.

        Raises MailDeliveryError if the SMTP server could not take the message
        after the bounded retries.
        """
        if not self.enabled:
            # Local development: nothing leaves the process.
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = to_email

        if text_content:
            msg.attach(MIMEText(text_content, 'plain'))
        msg.attach(MIMEText(html_content, 'html'))

        try:
            call_with_retry(
                lambda: self._deliver(msg),
                retry_on=(smtplib.SMTPException, OSError),
                label="smtp",
            )
        except UpstreamUnavailableError as e:
            logger.error(f"Error sending email to {to_email}: {e.__cause__!r}")
            raise MailDeliveryError(str(e.__cause__ or e)) from e

    def send_verification_code(self, to_email: str, first_name: str, otp: str) -> None:
        context = {
            "name": first_name or "there",
            "code": otp,
            "minutes": settings.EMAIL_OTP_EXPIRE_MINUTES,
        }
        self.send_email(
            to_email,
            "Verify your email",
            render_email("verify_code.html", **context),
            render_email("verify_code.txt", **context),
        )

    def send_password_reset(self, to_email: str, first_name: str, reset_token: str) -> None:
        context = {
            "name": first_name or "there",
            "reset_url": f"{settings.WEB_APP_BASE_URL.rstrip('/')}/reset-password?token={reset_token}",
            "minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
        }
        self.send_email(
            to_email,
            "Reset your password",
            render_email("password_reset.html", **context),
            render_email("password_reset.txt", **context),
        )


# Singleton instance
mail_service = MailService()
