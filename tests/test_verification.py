import pytest
from tablecall.errors import AuthError
from tablecall.verification import WebhookVerifier

from conftest import VALID_SIGNATURE, webhook_body


class TestWebhookVerifier:
    def test_valid_signature(self, verifier, retell_client):
        body = webhook_body("call_started", call_id="prov_1")
        verifier.verify(body, VALID_SIGNATURE)
        retell_client.verify.assert_called_once_with(
            body.decode(), api_key="test-webhook-key", signature=VALID_SIGNATURE,
        )

    def test_invalid_signature(self, verifier):
        with pytest.raises(AuthError, match="invalid"):
            verifier.verify(webhook_body("call_started", call_id="prov_1"), "v=1,d=forged")

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature(self, verifier, retell_client, signature):
        with pytest.raises(AuthError, match="missing"):
            verifier.verify(b"{}", signature)
        retell_client.verify.assert_not_called()

    def test_sdk_error_is_rejection(self, verifier, retell_client):
        retell_client.verify.side_effect = ValueError("bad signature format")
        with pytest.raises(AuthError):
            verifier.verify(b"{}", "garbage")

    def test_non_utf8_body(self, verifier):
        with pytest.raises(AuthError):
            verifier.verify(b"\xff\xfe", VALID_SIGNATURE)
