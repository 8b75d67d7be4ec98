import logging

from retell import Retell

from tablecall.errors import AuthError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-retell-signature"


class WebhookVerifier:
    """Checks the provider signature over the raw request body.

    The signature covers the exact bytes received, so verification runs
    before the body is parsed and never on a re-serialized object.
    """

    def __init__(self, secret: str, client: Retell | None = None):
        self.secret = secret
        self._client = client if client is not None else Retell(api_key=secret)

    def verify(self, raw_body: bytes, signature: str | None) -> None:
        if not signature:
            logger.warning("Webhook rejected: missing %s header", SIGNATURE_HEADER)
            raise AuthError("missing signature")
        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthError("body is not valid UTF-8") from e
        try:
            valid = self._client.verify(body, api_key=self.secret, signature=signature)
        except Exception as e:
            logger.warning("Webhook rejected: signature check raised %s", e)
            raise AuthError("signature check failed") from e
        if not valid:
            logger.warning("Webhook rejected: invalid signature")
            raise AuthError("invalid signature")
