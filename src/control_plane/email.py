"""Email sending module using Resend.

Handles invitation emails:
- Workspace invitations (join a workspace with a role)
- Partner invitations (join a partner's team)

Sending never raises; callers get a bool and the invitation row stands
either way, so an invite link can be re-sent or shared by hand.
"""

import html
import logging
import os
from dataclasses import dataclass

import resend

from control_plane.config import get_settings

logger = logging.getLogger("control-plane.email")


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class EmailConfig:
    """Email service configuration."""

    api_key: str
    from_email: str
    from_name: str = "Voice Agent Platform"

    @classmethod
    def from_env(cls) -> "EmailConfig":
        """Load email config from environment variables."""
        api_key = os.getenv("RESEND_API_KEY", "")
        from_email = os.getenv("RESEND_FROM_EMAIL", "noreply@example.com")
        from_name = os.getenv("RESEND_FROM_NAME", "Voice Agent Platform")

        if not api_key:
            logger.warning("RESEND_API_KEY not set - emails will fail")

        return cls(api_key=api_key, from_email=from_email, from_name=from_name)

    def is_configured(self) -> bool:
        return bool(self.api_key)


# =============================================================================
# Email Templates
# =============================================================================


def build_invitation_url(token: str, kind: str = "workspace") -> str:
    base = get_settings().app_url.rstrip("/")
    return f"{base}/invitations/accept?token={token}&type={kind}"


def _build_invitation_html(
    inviter_name: str,
    target_name: str,
    target_kind: str,
    role: str,
    accept_url: str,
    message: str | None = None,
) -> str:
    """Build HTML content for an invitation email."""
    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #333;">You're invited to join {html.escape(target_name)}</h2>
        <p>{html.escape(inviter_name)} invited you to the {target_kind}
           <strong>{html.escape(target_name)}</strong> as <strong>{html.escape(role)}</strong>.</p>
    """

    if message:
        body += f"""
        <blockquote style="border-left: 3px solid #ddd; margin: 20px 0; padding-left: 15px; color: #555;">
            {html.escape(message)}
        </blockquote>
        """

    body += f"""
        <div style="margin: 30px 0;">
            <a href="{accept_url}" style="display: inline-block; background: #0066cc; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px;">Accept Invitation</a>
        </div>
        <p style="color: #999; font-size: 12px;">
            This invitation expires in 7 days.
            If the button doesn't work, copy and paste this link: {accept_url}
        </p>
    </div>
    """
    return body


# =============================================================================
# Email Sender
# =============================================================================


class EmailSender:
    """Sends emails via Resend API."""

    def __init__(self, config: EmailConfig | None = None):
        """Initialize the email sender.

        Args:
            config: Email configuration. If not provided, loads from environment.
        """
        self.config = config or EmailConfig.from_env()
        resend.api_key = self.config.api_key

    def _send(self, to: str, subject: str, html_content: str) -> bool:
        if not self.config.is_configured():
            logger.error("Cannot send email: RESEND_API_KEY not configured")
            return False

        try:
            params: resend.Emails.SendParams = {
                "from": f"{self.config.from_name} <{self.config.from_email}>",
                "to": [to],
                "subject": subject,
                "html": html_content,
            }
            email_response = resend.Emails.send(params)
            logger.info(f"Email '{subject}' sent to {to}: {email_response.get('id')}")
            return True
        except Exception as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False

    async def send_workspace_invitation(
        self,
        to_email: str,
        workspace_name: str,
        inviter_name: str,
        role: str,
        token: str,
        message: str | None = None,
    ) -> bool:
        """Send a workspace invitation.

        Returns:
            True if email sent successfully, False otherwise
        """
        accept_url = build_invitation_url(token, "workspace")
        return self._send(
            to_email,
            f"You're invited to {workspace_name}",
            _build_invitation_html(
                inviter_name, workspace_name, "workspace", role, accept_url, message
            ),
        )

    async def send_partner_invitation(
        self,
        to_email: str,
        partner_name: str,
        inviter_name: str,
        role: str,
        token: str,
        message: str | None = None,
    ) -> bool:
        accept_url = build_invitation_url(token, "partner")
        return self._send(
            to_email,
            f"Join the {partner_name} team",
            _build_invitation_html(
                inviter_name, partner_name, "team", role, accept_url, message
            ),
        )


def get_email_sender() -> EmailSender:
    """FastAPI dependency; tests override it with a mock sender."""
    return EmailSender()
