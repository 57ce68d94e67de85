"""
Tests for credential redaction in log output.
"""
from mailsync.utils.logging import redact


class TestRedact:

    def test_bearer_token(self):
        assert redact("Authorization: Bearer ya29.a0AfH6SM-xyz") == "Authorization: Bearer ***"

    def test_token_fields(self):
        line = redact('refresh failed for {"access_token": "abc123", "refresh_token": "def456"}')

        assert "abc123" not in line
        assert "def456" not in line

    def test_query_string_secrets(self):
        line = redact("POST /api/v1/webhooks/gmail?token=s3cret&x=1")

        assert line == "POST /api/v1/webhooks/gmail?token=***&x=1"

    def test_plain_messages_untouched(self):
        assert redact("Sync completed for account 42") == "Sync completed for account 42"
