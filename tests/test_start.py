import logging

import start


def test_check_environment_warns_about_development_defaults(caplog, monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)

    with caplog.at_level(logging.WARNING, logger="donormatch.start"):
        start.check_environment()

    messages = " ".join(record.getMessage() for record in caplog.records)
    assert "SECRET_KEY is not set" in messages
    assert "SQLite" in messages
