import sys
import os
import logging

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from config import RedactingFilter


def make_record(msg, *args):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


class TestRedactingFilter:
    def test_bearer_token(self):
        record = make_record("Authorization: Bearer abc.def-123")
        RedactingFilter().filter(record)
        assert record.getMessage() == "Authorization: Bearer [REDACTED]"

    def test_token_fields(self):
        record = make_record("payload %s", {"access_token": "secret1", "code": "xyz"})
        RedactingFilter().filter(record)
        message = record.getMessage()
        assert "secret1" not in message
        assert "xyz" not in message
        assert message.count("[REDACTED]") == 2

    def test_websocket_query_token(self):
        record = make_record('%s - "WebSocket %s" [accepted]', "127.0.0.1:5000", "/ws?token=abc123&channelId=R1")
        RedactingFilter().filter(record)
        message = record.getMessage()
        assert "abc123" not in message
        assert "token=[REDACTED]&channelId=R1" in message

    def test_plain_message_untouched(self):
        record = make_record("Room %s created", "R1")
        assert RedactingFilter().filter(record) is True
        assert record.getMessage() == "Room R1 created"
