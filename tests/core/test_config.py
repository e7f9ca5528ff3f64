import pytest

from siwe_auth.core.config import Settings
from siwe_auth.services.email_verification import EmailVerifier


def test_secrets_have_no_defaults(monkeypatch):
    monkeypatch.delenv("ENCODE_KEY", raising=False)
    monkeypatch.delenv("SERVER_SECRET", raising=False)
    unset = Settings(_env_file=None)
    assert unset.ENCODE_KEY is None
    assert unset.SERVER_SECRET is None


def test_email_links_need_a_server_secret(monkeypatch):
    monkeypatch.delenv("SERVER_SECRET", raising=False)
    with pytest.raises(ValueError):
        EmailVerifier(Settings(_env_file=None).SERVER_SECRET)


def test_secrets_come_from_the_environment(monkeypatch):
    monkeypatch.setenv("ENCODE_KEY", "env-signing-key-0123456789abcdef")
    monkeypatch.setenv("SERVER_SECRET", "env-link-secret-0123456789abcdef")
    configured = Settings(_env_file=None)
    assert configured.ENCODE_KEY == "env-signing-key-0123456789abcdef"
    assert configured.SERVER_SECRET == "env-link-secret-0123456789abcdef"
