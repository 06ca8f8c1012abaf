from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, EmailTemplateAlias, AuditAction
from utils.audit import create_audit_log
from datetime import datetime, timezone
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "orders@rootsreach.in")
BRAND_NAME = "RootsReach"

class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: str,
        template_alias: EmailTemplateAlias,
        template_model: Dict[str, Any],
        order_id: Optional[str] = None,
        subject: Optional[str] = None
    ) -> MessageLog:
        """Send a transactional email with a built-in template and record it in message_logs."""
        db = database.get_db()
        subject = subject or self._default_subject(template_alias, template_model)

        message_log = MessageLog(
            order_id=order_id,
            recipient=recipient,
            template_alias=template_alias,
            subject=subject,
            status="queued"
        )

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    Subject=subject,
                    HtmlBody=self._build_html_body(template_alias, template_model),
                    TextBody=self._build_text_body(template_alias, template_model),
                    TrackOpens=True,
                    Tag=template_alias.value
                )
                message_log.postmark_message_id = response["MessageID"]
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"Email {template_alias.value} sent to {recipient}: {response['MessageID']}")
            else:
                # Dev mode - just log
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"[DEV MODE] Email {template_alias.value} logged (not sent) to {recipient}")
        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            logger.error(f"Failed to send email to {recipient}: {e}")

        doc = message_log.model_dump()
        await db.message_logs.insert_one(doc)

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            resource_type="order" if order_id else None,
            resource_id=order_id,
            metadata={
                "template": template_alias.value,
                "status": message_log.status,
                "postmark_id": message_log.postmark_message_id,
                "error": message_log.error_message,
            }
        )

        return message_log

    def _default_subject(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        order_number = model.get("order_number", "")
        if template_alias == EmailTemplateAlias.ORDER_SHIPPED:
            return f"Your order {order_number} has shipped"
        if template_alias == EmailTemplateAlias.ORDER_DELIVERED:
            return f"Your order {order_number} has been delivered"
        if template_alias == EmailTemplateAlias.AGENT_APPROVED:
            return f"Welcome to {BRAND_NAME} delivery partners"
        return f"Order {order_number} update: {model.get('status_display_name', '')}".strip()

    def _build_html_body(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        """Build HTML email body based on template type."""
        paragraphs = self._build_text_body(template_alias, model).split("\n\n")
        content = "".join(f"<p>{p.replace(chr(10), '<br>')}</p>" for p in paragraphs)
        return f"""
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <div style="background-color: #7c2d12; padding: 20px; border-radius: 8px 8px 0 0;">
                <h1 style="color: #fef3c7; margin: 0;">{BRAND_NAME}</h1>
            </div>
            <div style="padding: 20px; border: 1px solid #e2e8f0; border-top: none; border-radius: 0 0 8px 8px;">
                {content}
            </div>
        </body>
        </html>
        """

    def _build_text_body(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        """Build plain text email body based on template type."""
        name = model.get("customer_name") or "there"
        order_number = model.get("order_number", "")

        if template_alias == EmailTemplateAlias.ORDER_SHIPPED:
            lines = [f"Hello {name},", f"Good news! Your order {order_number} is on its way."]
            if model.get("carrier_name"):
                lines.append(f"Carrier: {model['carrier_name']}")
            if model.get("tracking_number"):
                lines.append(f"Tracking number: {model['tracking_number']}")
            if model.get("estimated_delivery"):
                lines.append(f"Estimated delivery: {model['estimated_delivery']}")
            return "\n\n".join(lines)

        if template_alias == EmailTemplateAlias.ORDER_DELIVERED:
            return "\n\n".join([
                f"Hello {name},",
                f"Your order {order_number} has been delivered.",
                "Thank you for supporting our artisans.",
            ])

        if template_alias == EmailTemplateAlias.AGENT_APPROVED:
            return "\n\n".join([
                f"Hello {model.get('agent_name') or 'there'},",
                f"Your delivery partner application {model.get('application_id', '')} has been approved.",
                f"Set your password to start accepting deliveries: {model.get('setup_link', '')}",
            ])

        lines = [
            f"Hello {name},",
            f"Your order {order_number} is now: {model.get('status_display_name', model.get('status', ''))}.",
        ]
        if model.get("note"):
            lines.append(model["note"])
        return "\n\n".join(lines)


email_service = EmailService()
