from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from agentflow.service.email import EmailService
from agentflow.service.llm import LLMService


class TestLLMService:
    def test_stub_echoes_last_message(self):
        llm = LLMService("gpt-test")
        assert llm.is_stub
        response = llm.call([{"role": "user", "content": "Hallo Welt"}])
        assert response["content"] == "[stub model=gpt-test] Hallo Welt"

    def test_completion_content_and_usage(self):
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Antwort"))],
            usage=SimpleNamespace(prompt_tokens=3, completion_tokens=1, total_tokens=4),
        )
        client = MagicMock()
        client.chat.completions.create.return_value = completion
        llm = LLMService("gpt-test", client=client, temperature=0.0)

        response = llm.call([{"role": "user", "content": "Frage"}])

        assert response == {
            "content": "Antwort",
            "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
        }
        client.chat.completions.create.assert_called_once_with(
            model="gpt-test",
            messages=[{"role": "user", "content": "Frage"}],
            temperature=0.0,
        )

    def test_completion_without_choices_is_empty(self):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(choices=[], usage=None)
        assert LLMService("gpt-test", client=client).call([])["content"] == ""


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self):
        service = EmailService()
        assert not service.is_configured
        with patch("agentflow.service.email.smtplib.SMTP") as smtp:
            assert service.send("jobs@acme.example", "Bewerbung", "Hallo") is True
        smtp.assert_not_called()

    def test_missing_attachment_fails(self, tmp_path):
        service = EmailService()
        assert service.send("jobs@acme.example", "x", "y", attachments=[tmp_path / "fehlt.pdf"]) is False

    def test_smtp_send_with_attachment(self, tmp_path):
        cv = tmp_path / "lebenslauf.pdf"
        cv.write_bytes(b"%PDF-1.4")
        service = EmailService(
            smtp_host="smtp.example",
            smtp_user="bot@example.com",
            smtp_password="secret",
            from_email="bot@example.com",
        )
        with patch("agentflow.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            sent = service.send(
                "jobs@acme.example", "Bewerbung", "Hallo", attachments=[cv], reply_to="me@example.com"
            )

        assert sent is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "secret")
        from_addr, to_addr, raw = server.sendmail.call_args[0]
        assert (from_addr, to_addr) == ("bot@example.com", "jobs@acme.example")
        assert "Reply-To: me@example.com" in raw
        assert 'filename="lebenslauf.pdf"' in raw

    def test_smtp_failure_returns_false(self):
        import smtplib

        service = EmailService(smtp_host="smtp.example", from_email="bot@example.com")
        with patch("agentflow.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPException("boom")
            assert service.send("jobs@acme.example", "x", "y") is False
