import json

from app.core.middleware import _format_body_for_log, _redact_sensitive_keys, _resolve_request_id


def test_redacts_credentials_and_inline_images():
  payload = {"image_base64": "AAAA", "prompt": "A kitchen", "nested": [{"token": "abc", "order_id": "o-1"}]}

  assert _redact_sensitive_keys(payload) == {"image_base64": "***", "prompt": "A kitchen", "nested": [{"token": "***", "order_id": "o-1"}]}


def test_body_formatting_caps_and_skips_non_json():
  assert _format_body_for_log(b"", "application/json", 100) == "<empty>"
  assert _format_body_for_log(b"\x89PNG", "image/png", 100) == "<non-json body 4 bytes>"
  assert _format_body_for_log(b'{"prompt": "' + b"x" * 50 + b'"}', "application/json", 10).endswith("...(truncated)")
  assert json.loads(_format_body_for_log(b'{"image_base64": "AAAA"}', "application/json", 100)) == {"image_base64": "***"}


def test_request_id_reuses_well_formed_inbound_value():
  assert _resolve_request_id({"headers": [(b"x-request-id", b"client-req-123")]}) == "client-req-123"
  generated = _resolve_request_id({"headers": [(b"x-request-id", b"bad id!")]})
  assert generated != "bad id!"
  assert len(generated) == 36
