from tenant_billing.utils import env_bool, env_int


def test_env_bool(monkeypatch):
    monkeypatch.setenv("PAYMENT_EMAILS_ENABLED", " Yes ")
    monkeypatch.delenv("SMTP_USE_SSL", raising=False)

    assert env_bool("PAYMENT_EMAILS_ENABLED") is True
    assert env_bool("SMTP_USE_SSL", True) is True


def test_env_int_falls_back_on_blank_or_malformed(monkeypatch):
    monkeypatch.setenv("MANUAL_PAYMENT_PERIOD_DAYS", "45")
    monkeypatch.setenv("FREE_AI_DAILY_LIMIT", "")
    monkeypatch.setenv("FREE_AI_MONTHLY_LIMIT", "lots")

    assert env_int("MANUAL_PAYMENT_PERIOD_DAYS", 30) == 45
    assert env_int("FREE_AI_DAILY_LIMIT", 50) == 50
    assert env_int("FREE_AI_MONTHLY_LIMIT", 1000) == 1000
