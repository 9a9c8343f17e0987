"""Tests for log redaction helpers."""

from coursegate.logging import _redact_sensitive, email_fingerprint, session_fingerprint


class TestRedaction:
    """The redaction processor masks credentials by key name."""

    def test_session_id_is_masked(self):
        """A session id logged under its own name is masked."""
        sid = "01a14838-d0e1-757f-ad90-efdeb1fb7817"
        event = _redact_sensitive(None, "info", {"event": "x", "session_id": sid})
        assert event["session_id"] != sid
        assert "d0e1-757f" not in event["session_id"]

    def test_fingerprints_pass_through(self):
        """Digests are already safe and are left alone."""
        event = _redact_sensitive(
            None,
            "info",
            {"session_fingerprint": "abcdef0123456789", "token_hash": "deadbeefdeadbeef"},
        )
        assert event["session_fingerprint"] == "abcdef0123456789"
        assert event["token_hash"] == "deadbeefdeadbeef"

    def test_non_string_values_untouched(self):
        """Counters with sensitive-looking names are not strings and stay as-is."""
        event = _redact_sensitive(None, "info", {"sessions_revoked": 3, "password_reset": True})
        assert event == {"sessions_revoked": 3, "password_reset": True}


class TestFingerprints:
    """Stable digests for correlating log lines."""

    def test_session_fingerprint_is_stable_and_short(self):
        """Same id, same digest; never the id itself."""
        sid = "01a14838-d0e1-757f-ad90-efdeb1fb7817"
        assert session_fingerprint(sid) == session_fingerprint(sid)
        assert len(session_fingerprint(sid)) == 16
        assert sid not in session_fingerprint(sid)

    def test_email_fingerprint_normalizes(self):
        """Case and surrounding whitespace do not change the digest."""
        assert email_fingerprint(" A@X.com ") == email_fingerprint("a@x.com")
