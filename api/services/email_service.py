"""
Email Service
Handles team invitations and commission payout statements
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional, Dict, Any
from jinja2 import Environment, DictLoader, select_autoescape
import logging
from config import AppConfig

logger = logging.getLogger(__name__)


TEMPLATES = {
    "invitation.html": """
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background-color: #f8f9fa; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 10px; padding: 30px;">
    <h2>You've been invited to {{ organization_name }}</h2>
    <p>You have been added as <strong>{{ role }}</strong>.</p>
    {% if temporary_password %}
    <p>Sign in with this email address and the temporary password below, then change it right away.</p>
    <p style="font-size: 20px; font-weight: bold; letter-spacing: 2px;">{{ temporary_password }}</p>
    {% else %}
    <p>Sign in with your existing account to get started.</p>
    {% endif %}
    <p><a href="{{ base_url }}">{{ base_url }}</a></p>
  </div>
</body>
</html>
""",
    "payout_statement.html": """
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background-color: #f8f9fa; padding: 20px;">
  <div style="max-width: 700px; margin: 0 auto; background: white; border-radius: 10px; padding: 30px;">
    <h2>Commission Statement {{ payout.payout_number }}</h2>
    <p>Hello {{ member_name }},</p>
    <p>Period: {{ payout.period_start }} to {{ payout.period_end }}</p>
    <table style="width: 100%; border-collapse: collapse;">
      <tr><th align="left">Sale date</th><th align="left">Item</th><th align="right">Sale</th><th align="right">Rate</th><th align="right">Commission</th></tr>
      {% for item in payout.line_items %}
      <tr>
        <td>{{ item.sale_date }}</td>
        <td>{{ item.product_name or item.opportunity_id }}</td>
        <td align="right">${{ "%.2f"|format(item.sale_amount) }}</td>
        <td align="right">{{ "%.2f"|format(item.commission_percentage) }}%</td>
        <td align="right">${{ "%.2f"|format(item.commission_amount) }}</td>
      </tr>
      {% endfor %}
    </table>
    <p><strong>Total: ${{ "%.2f"|format(payout.total_amount) }}</strong> across {{ payout.commission_count }} commission(s).</p>
    <p>Payment method: {{ payout.payment_method }}</p>
  </div>
</body>
</html>
""",
}


class EmailService:
    def __init__(self):
        # Use centralized configuration
        config = AppConfig()
        self.smtp_host = config.SMTP_HOST
        self.smtp_port = config.SMTP_PORT
        self.smtp_username = config.SMTP_USERNAME
        self.smtp_password = config.SMTP_PASSWORD
        self.from_email = config.SMTP_FROM_EMAIL or "noreply@example.com"
        self.from_name = config.SMTP_FROM_NAME
        self.base_url = config.BASE_URL

        self.template_env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=select_autoescape(["html"])
        )

    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_username and self.smtp_password)

    def render(self, template_name: str, **context) -> str:
        return self.template_env.get_template(template_name).render(**context)

    async def send_email(self, to_email: str, subject: str, html_body: str,
                         text_body: Optional[str] = None) -> bool:
        """Send an email"""
        try:
            if not self.is_configured():
                logger.warning(f"⚠️ SMTP not configured - email '{subject}' to {to_email} not sent")
                return False

            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, 'plain'))
            msg.attach(MIMEText(html_body, 'html'))

            # Use SMTP_SSL for port 465, SMTP for other ports
            if self.smtp_port == 465:
                server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=60)
            else:
                server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=60)
                server.starttls()

            with server:
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            logger.info(f"📧 Email sent successfully to {to_email}")
            return True

        except Exception as e:
            logger.error(f"❌ Failed to send email to {to_email}: {e}")
            return False

    async def send_team_invitation(self, to_email: str, organization_name: str, role: str,
                                   temporary_password: Optional[str] = None) -> bool:
        html_body = self.render(
            "invitation.html",
            organization_name=organization_name,
            role=role,
            temporary_password=temporary_password,
            base_url=self.base_url
        )
        return await self.send_email(to_email, f"You've been invited to {organization_name}", html_body)

    async def send_payout_statement(self, to_email: str, member_name: str, payout: Dict[str, Any]) -> bool:
        html_body = self.render("payout_statement.html", member_name=member_name, payout=payout)
        return await self.send_email(to_email, f"Commission statement {payout.get('payout_number')}", html_body)


# Global instance
email_service = EmailService()
