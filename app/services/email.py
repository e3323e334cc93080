import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from app.config import settings
from app.services.common import format_minor_amount

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, to_address: str, subject: str, html_body: str) -> bool: ...


def _smtp_config() -> dict:
    return {
        "host": settings.smtp_host,
        "port": settings.smtp_port,
        "username": settings.smtp_username,
        "password": settings.smtp_password,
        "use_tls": settings.smtp_use_tls,
        "use_ssl": settings.smtp_use_ssl,
        "from_email": settings.smtp_from_email,
        "from_name": settings.smtp_from_name,
    }


def _create_smtp_client(host: str, port: int, use_ssl: bool, timeout: int | None = None):
    if use_ssl:
        if timeout is None:
            return smtplib.SMTP_SSL(host, port)
        return smtplib.SMTP_SSL(host, port, timeout=timeout)
    if timeout is None:
        return smtplib.SMTP(host, port)
    return smtplib.SMTP(host, port, timeout=timeout)


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
    config: dict | None = None,
) -> bool:
    """
    Send an email via SMTP.

    Args:
        to_email: Recipient email address
        subject: Email subject
        body_html: HTML body content
        body_text: Plain text alternative (optional)
        config: SMTP settings; defaults to the application settings

    Returns:
        True if email was sent successfully, False otherwise
    """
    config = config or _smtp_config()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    try:
        host = str(config.get("host") or "")
        if not host:
            logger.error(f"No SMTP host configured; email to {to_email} not sent")
            return False
        server = _create_smtp_client(host, int(config["port"]), bool(config["use_ssl"]), timeout=30)

        if config["use_tls"] and not config["use_ssl"]:
            server.starttls()

        if config["username"] and config["password"]:
            server.login(config["username"], config["password"])

        server.sendmail(config["from_email"], to_email, msg.as_string())
        server.quit()

        logger.info("Email sent successfully to %s", to_email)
        return True

    except smtplib.SMTPAuthenticationError as exc:
        logger.error("SMTP authentication failed for %s: %s", to_email, exc)
        return False
    except Exception as e:
        logger.error("Failed to send email to %s: %s", to_email, e)
        return False


class SmtpNotifier:
    """Notifier backed by the configured SMTP relay."""

    def send(self, to_address: str, subject: str, html_body: str) -> bool:
        return send_email(to_address, subject, html_body)


def get_notifier() -> Notifier:
    return SmtpNotifier()


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    html: str


def _wrap(title: str, paragraphs: list[str], link: str | None = None, link_label: str = "") -> str:
    body = "\n".join(f"        <p>{p}</p>" for p in paragraphs)
    button = ""
    if link:
        button = f'\n        <p><a href="{link}" class="button">{link_label}</a></p>'
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .button {{
            display: inline-block;
            padding: 12px 24px;
            background-color: #007bff;
            color: #ffffff;
            text-decoration: none;
            border-radius: 4px;
            margin: 20px 0;
        }}
        .footer {{ margin-top: 30px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        <h2>{title}</h2>
{body}{button}
        <div class="footer">
            <p>This is an automated message from {settings.smtp_from_name}. Please do not reply to this email.</p>
        </div>
    </div>
</body>
</html>
"""


def _billing_url(invoice_url: str | None) -> str:
    return invoice_url or f"{settings.frontend_url.rstrip('/')}/billing"


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if name else "Hi,"


def payment_failed_email(
    name: str | None,
    invoice_number: str | None,
    amount: int,
    currency: str,
    failure_message: str | None,
    invoice_url: str | None = None,
) -> EmailMessage:
    label = invoice_number or "your latest invoice"
    paragraphs = [
        _greeting(name),
        f"We could not collect {format_minor_amount(amount, currency)} for {label}.",
    ]
    if failure_message:
        paragraphs.append(f"The payment was declined: {failure_message}")
    paragraphs.append("Please update your payment method to keep your subscription active.")
    return EmailMessage(
        subject="Payment failed",
        html=_wrap("Payment failed", paragraphs, _billing_url(invoice_url), "Update payment method"),
    )


def payment_succeeded_email(
    name: str | None,
    invoice_number: str | None,
    amount: int,
    currency: str,
    invoice_url: str | None = None,
) -> EmailMessage:
    label = invoice_number or "your invoice"
    return EmailMessage(
        subject="Payment received",
        html=_wrap(
            "Payment received",
            [
                _greeting(name),
                f"Thank you. We received {format_minor_amount(amount, currency)} for {label}.",
            ],
            _billing_url(invoice_url),
            "View invoice",
        ),
    )


def dunning_reminder_email(
    name: str | None,
    invoice_number: str | None,
    amount: int,
    currency: str,
    attempt_number: int,
    invoice_url: str | None = None,
) -> EmailMessage:
    label = invoice_number or "your invoice"
    return EmailMessage(
        subject=f"Reminder: {label} is still unpaid",
        html=_wrap(
            "Payment reminder",
            [
                _greeting(name),
                f"{format_minor_amount(amount, currency)} for {label} is still outstanding "
                f"after {attempt_number} failed payment attempt(s).",
                "Please update your payment method to avoid interruption of service.",
            ],
            _billing_url(invoice_url),
            "Pay now",
        ),
    )


def trial_ending_email(name: str | None, plan_name: str | None, trial_end: str | None) -> EmailMessage:
    plan = plan_name or "your plan"
    when = f" on {trial_end}" if trial_end else " soon"
    return EmailMessage(
        subject="Your trial is ending",
        html=_wrap(
            "Your trial is ending",
            [_greeting(name), f"Your trial of {plan} ends{when}."],
            _billing_url(None),
            "Manage subscription",
        ),
    )


def subscription_canceled_email(name: str | None, plan_name: str | None) -> EmailMessage:
    plan = plan_name or "your subscription"
    return EmailMessage(
        subject="Subscription canceled",
        html=_wrap(
            "Subscription canceled",
            [_greeting(name), f"{plan} has been canceled."],
        ),
    )
