"""
Payment notifications.

Delivery is fire-and-forget: a failed email is logged and dropped, never
retried here and never allowed to fail the settlement that triggered it.
"""

from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional
import asyncio
import logging
import smtplib

from settlement.financial_precision import format_amount

logger = logging.getLogger(__name__)


@dataclass
class PaymentEmailDetails:
    user_name: str
    amount: int  # Minor units
    currency: str
    charge_title: str
    reference: str
    provider: str
    date: str
    error: Optional[str] = None


SUCCESS_TEMPLATE = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2 style="color: #2d3748;">Payment Confirmation</h2>
    <p>Dear {user_name},</p>
    <p>Your payment has been successfully processed. Here are the details:</p>
    <div style="background-color: #f7fafc; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <p><strong>Amount:</strong> {amount}</p>
        <p><strong>Service Charge:</strong> {charge_title}</p>
        <p><strong>Transaction Reference:</strong> {reference}</p>
        <p><strong>Payment Provider:</strong> {provider}</p>
        <p><strong>Date:</strong> {date}</p>
    </div>
    <p>Thank you for your payment.</p>
</div>
"""

FAILURE_TEMPLATE = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2 style="color: #e53e3e;">Payment Failed</h2>
    <p>Dear {user_name},</p>
    <p>Your payment was not successful. Here are the details:</p>
    <div style="background-color: #fff5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <p><strong>Amount:</strong> {amount}</p>
        <p><strong>Service Charge:</strong> {charge_title}</p>
        <p><strong>Transaction Reference:</strong> {reference}</p>
        <p><strong>Payment Provider:</strong> {provider}</p>
        <p><strong>Date:</strong> {date}</p>
        <p><strong>Error:</strong> {error}</p>
    </div>
    <p>Please try again or contact your estate administrator.</p>
</div>
"""


def render_success_email(details: PaymentEmailDetails) -> str:
    return SUCCESS_TEMPLATE.format(
        user_name=details.user_name,
        amount=format_amount(details.amount, details.currency),
        charge_title=details.charge_title,
        reference=details.reference,
        provider=details.provider,
        date=details.date,
    )


def render_failure_email(details: PaymentEmailDetails) -> str:
    return FAILURE_TEMPLATE.format(
        user_name=details.user_name,
        amount=format_amount(details.amount, details.currency),
        charge_title=details.charge_title,
        reference=details.reference,
        provider=details.provider,
        date=details.date,
        error=details.error or "Payment was declined",
    )


class PaymentNotifier:
    """Notifier interface; the base implementation only logs."""

    async def send_payment_success(self, email: Optional[str], details: PaymentEmailDetails) -> bool:
        logger.info(f"[NOTIFY] Payment success {details.reference} for {email}")
        return True

    async def send_payment_failure(self, email: Optional[str], details: PaymentEmailDetails) -> bool:
        logger.info(f"[NOTIFY] Payment failure {details.reference} for {email}")
        return True


class EmailNotifier(PaymentNotifier):
    """Sends payment emails over SMTP (STARTTLS)."""

    def __init__(self, host: str, port: int, user: str, password: str, sender: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def _send(self, to: str, subject: str, html: str):
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(message)

    async def send_email(self, to: Optional[str], subject: str, html: str) -> bool:
        if not to:
            logger.warning(f"[NOTIFY] No recipient for '{subject}', skipping")
            return False
        try:
            await asyncio.to_thread(self._send, to, subject, html)
            logger.info(f"[NOTIFY] Email sent to {to} | Subject: {subject}")
            return True
        except Exception as e:
            logger.error(f"[NOTIFY] Failed to send email to {to}: {str(e)}")
            return False

    async def send_payment_success(self, email, details):
        return await self.send_email(email, "Payment Successful", render_success_email(details))

    async def send_payment_failure(self, email, details):
        return await self.send_email(email, "Payment Failed", render_failure_email(details))


def build_notifier(settings) -> PaymentNotifier:
    if settings.SMTP_HOST:
        return EmailNotifier(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            settings.EMAIL_FROM,
        )
    logger.warning("[NOTIFY] SMTP not configured; payment emails will only be logged")
    return PaymentNotifier()
