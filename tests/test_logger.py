import structlog
from upsync.observability.logger import REDACTED, get_logger, redact_secrets, setup_logging


class TestRedaction:
    def test_secret_keys_are_masked(self):
        event = redact_secrets(None, "info", {"event": "token_stored", "token": "up:yeah:abc", "Authorization": "Bearer x"})
        assert event["token"] == REDACTED
        assert event["Authorization"] == REDACTED
        assert event["event"] == "token_stored"

    def test_token_inside_message_is_masked(self):
        event = redact_secrets(None, "error", {"event": "gateway_error", "error": "bad header Bearer up:yeah:abc123"})
        assert event["error"] == f"bad header Bearer {REDACTED}"

    def test_other_fields_untouched(self):
        event = redact_secrets(None, "info", {"event": "queue_run_complete", "processed": 3, "token": None})
        assert event == {"event": "queue_run_complete", "processed": 3, "token": None}


class TestSetup:
    def test_binds_service_context(self):
        setup_logging("debug")
        assert structlog.contextvars.get_contextvars()["service"] == "upsync"
        setup_logging()

    def test_get_logger(self):
        assert get_logger("sync.queue") is not None
