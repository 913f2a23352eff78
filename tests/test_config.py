from openapi_dispatch.config import Settings
from openapi_dispatch.logging import redact_payload


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("DISPATCH_API_ROOT", "DISPATCH_STRICT", "DISPATCH_VALIDATE", "DISPATCH_SCHEMA_DRAFT"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.dispatch_api_root == "/"
        assert settings.dispatch_strict is False
        assert settings.dispatch_validate is True
        assert settings.validator_options() == {"format_checker": False, "draft": None}

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_API_ROOT", "/api/v2")
        monkeypatch.setenv("dispatch_strict", "true")
        monkeypatch.setenv("DISPATCH_FORMAT_CHECKER", "1")
        monkeypatch.setenv("DISPATCH_SCHEMA_DRAFT", "2020-12")
        settings = Settings()
        assert settings.dispatch_api_root == "/api/v2"
        assert settings.dispatch_strict is True
        assert settings.validator_options() == {"format_checker": True, "draft": "2020-12"}


class TestRedactPayload:
    def test_sensitive_keys_are_redacted(self):
        payload = {
            "authorization": "Bearer abc",
            "cookie": "session=1",
            "X-Api-Key": "k",
            "content-type": "application/json",
            "nested": {"password": "p", "name": "n"},
        }
        assert redact_payload(payload) == {
            "authorization": "***REDACTED***",
            "cookie": "***REDACTED***",
            "X-Api-Key": "***REDACTED***",
            "content-type": "application/json",
            "nested": {"password": "***REDACTED***", "name": "n"},
        }
