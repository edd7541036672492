from docflow.utils.redact import (
    REDACTION_TOKEN,
    detect_pii,
    is_sensitive_field,
    redact_mapping,
    redact_text,
    redact_value,
)


def test_redact_text_masks_contact_details():
    scrubbed = redact_text("Reach jane.doe@example.com or 555-123-4567, SSN 123-45-6789")
    assert "jane.doe@example.com" not in scrubbed
    assert "555-123-4567" not in scrubbed
    assert "123-45-6789" not in scrubbed
    assert scrubbed.count(REDACTION_TOKEN) >= 3


def test_detect_pii_names_kinds():
    kinds = detect_pii("mail ops@example.org with Bearer abc.def")
    assert "email" in kinds
    assert "bearer_token" in kinds
    assert detect_pii("nothing sensitive here") == []


def test_sensitive_fields_masked_by_leaf_name():
    assert is_sensitive_field("source.auth.credentials")
    assert is_sensitive_field("db_password")
    assert not is_sensitive_field("filename")
    assert redact_value("source.auth.credentials", {"user": "a"}) == REDACTION_TOKEN


def test_redact_value_summarises_bytes_and_truncates_strings():
    assert redact_value("content", b"\x00" * 2048) == "<2048 bytes>"
    long_value = redact_value("filename", "x" * 500)
    assert len(long_value) <= 123
    assert long_value.endswith("...")
    assert redact_value("size_bytes", 10) == 10
    assert redact_value("filename", None) is None


def test_redact_mapping_recurses_into_nested_values():
    payload = {
        "token": "abc",
        "detail": "contact a@b.io",
        "nested": {"api_key": "k", "items": ["x@y.io", 3]},
    }
    redacted = redact_mapping(payload)
    assert redacted["token"] == REDACTION_TOKEN
    assert "a@b.io" not in redacted["detail"]
    assert redacted["nested"]["api_key"] == REDACTION_TOKEN
    assert redacted["nested"]["items"][0] == REDACTION_TOKEN
    assert redacted["nested"]["items"][1] == 3
