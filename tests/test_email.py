"""Tests for invitation emails sent through Resend."""

from unittest.mock import patch

import pytest

from control_plane.email import EmailConfig, EmailSender, build_invitation_url


@pytest.fixture
def sender() -> EmailSender:
    return EmailSender(EmailConfig(api_key="re_test", from_email="team@example.com"))


class TestEmailConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_env")
        monkeypatch.setenv("RESEND_FROM_EMAIL", "hello@example.com")

        config = EmailConfig.from_env()

        assert config.api_key == "re_env"
        assert config.from_email == "hello@example.com"
        assert config.from_name == "Voice Agent Platform"
        assert config.is_configured()

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        assert not EmailConfig.from_env().is_configured()


def test_invitation_url(monkeypatch):
    monkeypatch.setenv("APP_URL", "https://app.example.com/")
    assert build_invitation_url("tok123", "partner") == (
        "https://app.example.com/invitations/accept?token=tok123&type=partner"
    )


class TestEmailSender:
    """Tests for EmailSender."""

    async def test_workspace_invitation(self, sender):
        with patch("control_plane.email.resend.Emails.send", return_value={"id": "em_1"}) as send:
            sent = await sender.send_workspace_invitation(
                to_email="new@example.com",
                workspace_name="Sales <East>",
                inviter_name="Olive",
                role="member",
                token="tok123",
                message="Welcome aboard",
            )

        assert sent is True
        params = send.call_args.args[0]
        assert params["to"] == ["new@example.com"]
        assert params["from"] == "Voice Agent Platform <team@example.com>"
        assert params["subject"] == "You're invited to Sales <East>"
        assert "Sales &lt;East&gt;" in params["html"]
        assert "Welcome aboard" in params["html"]
        assert "token=tok123&type=workspace" in params["html"]

    async def test_partner_invitation(self, sender):
        with patch("control_plane.email.resend.Emails.send", return_value={"id": "em_2"}) as send:
            sent = await sender.send_partner_invitation(
                to_email="admin@example.com",
                partner_name="Acme Voice",
                inviter_name="Olive",
                role="admin",
                token="tok456",
            )

        assert sent is True
        params = send.call_args.args[0]
        assert params["subject"] == "Join the Acme Voice team"
        assert "type=partner" in params["html"]
        assert "blockquote" not in params["html"]

    async def test_provider_error_returns_false(self, sender):
        with patch("control_plane.email.resend.Emails.send", side_effect=RuntimeError("down")):
            sent = await sender.send_workspace_invitation(
                "new@example.com", "Main", "Olive", "member", "tok"
            )
        assert sent is False

    async def test_unconfigured_sender_skips_resend(self):
        sender = EmailSender(EmailConfig(api_key="", from_email="team@example.com"))
        with patch("control_plane.email.resend.Emails.send") as send:
            sent = await sender.send_partner_invitation(
                "admin@example.com", "Acme Voice", "Olive", "admin", "tok"
            )
        assert sent is False
        send.assert_not_called()
