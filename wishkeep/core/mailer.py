"""
Async-safe email sender.

smtplib is blocking; every send goes through loop.run_in_executor so the
FastAPI event loop never waits on SMTP.
"""
import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from wishkeep.core.config import Settings

logger = logging.getLogger("wishkeep.mailer")


def _get_base_html_template(title: str, content: str, button_text: str | None = None, button_link: str | None = None) -> str:
    """Base HTML layout. ``content`` is escaped here; callers pass plain text."""
    safe_title = html.escape(title)
    safe_content = html.escape(content).replace("\n", "<br>")

    button_html = ""
    if button_text and button_link:
        safe_button_text = html.escape(button_text)
        safe_button_link = button_link.replace('"', "&quot;").replace("'", "&#x27;")
        button_html = f'''
        <div style="text-align: center; margin: 30px 0;">
            <a href="{safe_button_link}" style="display: inline-block; padding: 14px 28px; background-color: #6366f1; color: #ffffff; text-decoration: none; border-radius: 8px; font-weight: 600;">
                {safe_button_text}
            </a>
        </div>'''

    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{safe_title}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f3f4f6; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <tr>
            <td style="background-color: #ffffff; border-radius: 16px; padding: 40px;">
                <h2 style="margin: 0 0 20px 0; font-size: 22px; color: #1f2937; text-align: center;">{safe_title}</h2>
                <div style="color: #4b5563; font-size: 16px; line-height: 1.6;">{safe_content}</div>
                {button_html}
                <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; text-align: center;">
                    <p style="margin: 0; color: #9ca3af; font-size: 14px;">This is an automated message from wishkeep</p>
                </div>
            </td>
        </tr>
    </table>
</body>
</html>'''


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.settings.smtp_from_email
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain", "utf-8"))
        message.attach(MIMEText(html_body, "html", "utf-8"))
        return message

    def _send_sync(self, message: MIMEMultipart) -> None:
        """Blocking SMTP send - must be run in an executor."""
        s = self.settings
        if s.smtp_use_tls:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=15) as server:
                server.starttls()
                if s.smtp_username:
                    server.login(s.smtp_username, s.smtp_password)
                server.send_message(message)
        else:
            with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=15) as server:
                if s.smtp_username:
                    server.login(s.smtp_username, s.smtp_password)
                server.send_message(message)

    async def send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Send one message; returns whether it was handed to SMTP."""
        if not self.settings.email_notifications_enabled:
            logger.info("Email notifications disabled. Skipping email subject=%r", subject)
            return False
        if not self.settings.smtp_host:
            logger.info("SMTP not configured - skipping send subject=%r", subject)
            return False

        message = self._build_message(to_email, subject, text_body, html_body)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, message)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email subject=%r", subject)
            return False
        logger.info("Email sent subject=%r", subject)
        return True

    async def send_reservation_reminder(self, to_email: str, wish_title: str) -> bool:
        subject = "Did you get the gift you reserved?"
        link = f"{self.settings.frontend_url.rstrip('/')}/reservations"
        text_body = (
            f"A while ago you reserved \"{wish_title}\".\n\n"
            "If you already bought it, mark it as purchased. "
            "If you changed your mind, release it so someone else can claim it.\n\n"
            f"Manage your reservations: {link}"
        )
        html_body = _get_base_html_template(
            title="Reservation reminder",
            content=text_body,
            button_text="Manage reservations",
            button_link=link,
        )
        return await self.send_email(to_email, subject, text_body, html_body)
