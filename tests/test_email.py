import smtplib
from unittest.mock import MagicMock, patch

from tokenwarden.service.email import EmailService


def _configured(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="hunter22",
        from_email="noreply@example.com",
        base_url="https://auth.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def test_dev_mode_logs_instead_of_sending():
    service = EmailService()
    assert service.is_configured is False
    with patch("tokenwarden.service.email.smtplib.SMTP") as smtp:
        assert service.send_verification_code("someone@example.com", "012345") is True
    smtp.assert_not_called()


def test_dev_mode_log_redacts_recipient():
    service = EmailService()
    with patch("tokenwarden.service.email.logger") as mock_logger:
        service.send_welcome("someone@example.com", name="Ada")
    kwargs = mock_logger.info.call_args.kwargs
    assert kwargs["to"] == "so***@example.com"


def test_reset_link_contains_token():
    service = _configured()
    with patch.object(EmailService, "_deliver") as deliver:
        assert service.send_password_reset("user@example.com", "tok-123", name="Ada") is True

    msg, to_email = deliver.call_args.args
    assert to_email == "user@example.com"
    text = msg.get_payload()[0].get_payload()
    assert "https://auth.example.com/reset-password?token=tok-123" in text
    assert "60 minutes" in text


def test_starttls_login_and_send():
    server = MagicMock()
    with patch("tokenwarden.service.email.smtplib.SMTP", return_value=server) as smtp:
        assert _configured().send_verification_code("user@example.com", "654321") is True

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@example.com", "hunter22")
    assert server.sendmail.call_args.args[:2] == ("noreply@example.com", "user@example.com")


def test_delivery_failure_reports_false():
    with patch(
        "tokenwarden.service.email.smtplib.SMTP",
        side_effect=smtplib.SMTPConnectError(421, "busy"),
    ):
        assert _configured().send_welcome("user@example.com") is False


def test_auth_failure_reports_false():
    server = MagicMock()
    server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
    with patch("tokenwarden.service.email.smtplib.SMTP", return_value=server):
        assert _configured().send_welcome("user@example.com") is False


def test_html_escapes_name():
    service = _configured()
    with patch.object(EmailService, "_deliver") as deliver:
        service.send_verification_code("user@example.com", "111111", name="<b>x</b>")

    msg, _ = deliver.call_args.args
    html = msg.get_payload()[1].get_payload()
    assert "<b>x</b>" not in html
    assert "&lt;b&gt;" in html


def test_dev_mode_log_omits_secrets():
    service = EmailService(base_url="https://auth.example.com")
    with patch("tokenwarden.service.email.logger") as mock_logger:
        service.send_password_reset("someone@example.com", "reset-tok-abc123")
        service.send_verification_code("someone@example.com", "482913")

    assert mock_logger.info.call_count == 2
    for call in mock_logger.info.call_args_list:
        logged = repr(call)
        assert "reset-tok-abc123" not in logged
        assert "482913" not in logged
        assert call.kwargs["subject"]
