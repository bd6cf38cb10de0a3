import base64
import os

import base58
import pytest
from nacl.signing import SigningKey

from agenttunnel.auth import SignedCredential
from agenttunnel.config import BitteUrls, Config
from agenttunnel.signing import SigningPayload, hash_payload


def sign_credential(signing_key: SigningKey, account_id: str = "alice.test",
                    message: str = Config.SIGN_MESSAGE, recipient: str = "ai.bitte.near",
                    callback_url: str = "https://wallet.bitte.ai/success") -> SignedCredential:
    """Build a credential the way the wallet does: sign the payload hash with the account key."""
    nonce = base64.b64encode(os.urandom(32)).decode("ascii")
    payload = SigningPayload.build(message, nonce, recipient, callback_url)
    signature = signing_key.sign(hash_payload(payload)).signature
    public_key = "ed25519:" + base58.b58encode(bytes(signing_key.verify_key)).decode("ascii")
    return SignedCredential(
        message=message,
        nonce=nonce,
        public_key=public_key,
        recipient=recipient,
        signature=base64.b64encode(signature).decode("ascii"),
        account_id=account_id,
        callback_url=callback_url,
    )


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def credential(signing_key):
    return sign_credential(signing_key)


@pytest.fixture
def urls():
    return BitteUrls.for_network(testnet=False)
