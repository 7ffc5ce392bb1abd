import logging
from html import escape
from typing import Dict, List, Optional, Union

import resend

from config import Settings
from errors import DependencyFailure

logger = logging.getLogger(__name__)

THEME = {
    "primary": "#007bff",
    "background": "#f8f9fa",
    "text": "#212529",
    "text_light": "#6c757d",
    "warning": "#ffc107",
}


class Mailer:
    def __init__(self, settings: Settings):
        self.api_key = settings.RESEND_API_KEY.strip()
        self.sender = settings.MAIL_FROM

    def send(self, to: Union[str, List[str]], subject: str, text: Optional[str] = None, html: Optional[str] = None) -> str:
        recipients = [to] if isinstance(to, str) else list(to)
        if not recipients:
            raise DependencyFailure("Email validation failed: at least one recipient required")
        if not text and not html:
            raise DependencyFailure("Email validation failed: either text or html content is required")
        if not self.api_key:
            logger.error("Email to %s not sent: RESEND_API_KEY is not configured", recipients)
            raise DependencyFailure("Email service is not configured")

        payload: Dict[str, object] = {
            "from": self.sender,
            "to": recipients,
            "subject": subject,
        }
        if text:
            payload["text"] = text
        if html:
            payload["html"] = html

        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            logger.error("Email sending to %s failed: %s", recipients, exc)
            raise DependencyFailure("Failed to send email", detail=str(exc)) from exc

        message_id = response.get("id") if isinstance(response, dict) else None
        if not message_id:
            logger.error("Email sending to %s failed: %s", recipients, response)
            raise DependencyFailure("Failed to send email", detail=f"Unexpected response: {response}")
        logger.info("Email sent successfully: %s", message_id)
        return message_id


def _layout(company_name: str, body: str, support_email: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:0;background:{THEME['background']};font-family:Arial,Helvetica,sans-serif;color:{THEME['text']};">
    <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
      <tr>
        <td align="center" style="padding:32px 16px;">
          <table role="presentation" width="560" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:12px;padding:32px;">
            <tr><td style="font-size:22px;font-weight:700;color:{THEME['primary']};">{escape(company_name)}</td></tr>
            <tr><td style="padding-top:24px;font-size:15px;line-height:1.6;">{body}</td></tr>
            <tr>
              <td style="padding-top:32px;font-size:12px;color:{THEME['text_light']};">
                Need help? Contact us at <a href="mailto:{escape(support_email)}">{escape(support_email)}</a>.
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>"""


def render_otp_email(
    email: str,
    otp: str,
    user_name: str = "",
    purpose: str = "account verification",
    expiry_minutes: int = 10,
    company_name: str = "E-Commerce Express",
    support_email: str = "support@ecommerce-express.com",
) -> str:
    greeting = f"Hello {escape(user_name)}," if user_name else "Hello,"
    body = f"""
      <p>{greeting}</p>
      <p>We received a request for {escape(purpose)} on the account <strong>{escape(email)}</strong>.
      Use the code below to continue.</p>
      <p style="text-align:center;margin:28px 0;">
        <span style="display:inline-block;padding:16px 28px;border-radius:10px;font-size:32px;letter-spacing:0.35em;font-weight:700;background:{THEME['background']};border:2px dashed {THEME['primary']};">{escape(otp)}</span>
      </p>
      <p style="color:{THEME['text_light']};">This code expires in {expiry_minutes} minutes and can be used once.</p>
      <p style="border-left:4px solid {THEME['warning']};padding-left:12px;">
        If you did not request this, you can ignore this email. Never share this code with anyone.
      </p>"""
    return _layout(company_name, body, support_email)


def render_welcome_email(
    user_name: str,
    user_email: str,
    company_name: str = "E-Commerce Express",
    support_email: str = "support@ecommerce-express.com",
) -> str:
    body = f"""
      <p>Hello {escape(user_name)},</p>
      <p>Welcome to {escape(company_name)}! Your account <strong>{escape(user_email)}</strong> is ready.</p>
      <p>Browse the catalogue, fill your cart and check out whenever you like.</p>"""
    return _layout(company_name, body, support_email)


MODERATOR_RESPONSIBILITIES = [
    "Review and moderate user-generated content",
    "Manage product listings and descriptions",
    "Handle customer disputes and complaints",
    "Monitor and enforce community guidelines",
    "Assist with order management and processing",
]


def render_moderator_welcome_email(
    moderator_name: str,
    moderator_email: str,
    admin_panel_url: str,
    assigned_by: str = "Admin Team",
    company_name: str = "E-Commerce Express",
    support_email: str = "support@ecommerce-express.com",
) -> str:
    duties = "".join(f"<li>{escape(d)}</li>" for d in MODERATOR_RESPONSIBILITIES)
    body = f"""
      <p>Hello {escape(moderator_name)},</p>
      <p>{escape(assigned_by)} has added <strong>{escape(moderator_email)}</strong> to the
      {escape(company_name)} moderator team.</p>
      <p>As a moderator you will:</p>
      <ul style="padding-left:20px;">{duties}</ul>
      <p style="text-align:center;margin:28px 0;">
        <a href="{escape(admin_panel_url)}" style="display:inline-block;padding:12px 24px;border-radius:8px;background:{THEME['primary']};color:#ffffff;text-decoration:none;font-weight:700;">Open the admin panel</a>
      </p>
      <p style="border-left:4px solid {THEME['warning']};padding-left:12px;">
        Sign in with the password your administrator gave you and change it right away.
      </p>"""
    return _layout(company_name, body, support_email)
