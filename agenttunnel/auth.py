import asyncio
import errno
import logging
import secrets
import socket
import sys
import webbrowser
from typing import Callable, Optional, Union
from urllib.parse import quote, urlencode

import base58
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import BitteUrls, Config
from .errors import BrowserLaunchError, HandshakeRejected, MalformedCredential, PortInUseError
from .signing import SigningPayload, b64decode_lenient, hash_payload
from .state import StateStore

# Keep uvicorn quiet while the temporary listener runs
logging.getLogger("uvicorn.error").setLevel(logging.WARNING)

logger = logging.getLogger("agenttunnel-auth")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

ED25519_PREFIX = "ed25519:"


class SignedCredential(BaseModel):
    """A signed message proving control of an account; used as the registry API key."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    message: str = Field(..., description="Message text that was signed")
    nonce: str = Field(..., description="Base64 nonce, at most 32 bytes decoded")
    public_key: str = Field(..., alias="publicKey", description="Signer key as ed25519:<base58>")
    recipient: str = Field(..., description="Recipient the message was addressed to")
    signature: str = Field(..., description="Base64 ed25519 signature over the payload hash")
    account_id: Optional[str] = Field(None, alias="accountId")
    callback_url: Optional[str] = Field(None, alias="callbackUrl")

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "SignedCredential":
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedCredential(f"Invalid signed credential: {e.error_count()} validation error(s)") from e

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def payload(self) -> SigningPayload:
        return SigningPayload.build(
            message=self.message,
            nonce=self.nonce,
            recipient=self.recipient,
            callback_url=self.callback_url,
        )


def parse_public_key(public_key: str) -> VerifyKey:
    """Decode an ``ed25519:<base58>`` public key (the prefix is optional)."""
    encoded = public_key
    if ":" in public_key:
        key_type, encoded = public_key.split(":", 1)
        if key_type.lower() != "ed25519":
            raise MalformedCredential(f"Unsupported key type: {key_type}")
    try:
        raw = base58.b58decode(encoded)
    except ValueError as e:
        raise MalformedCredential(f"Public key is not valid base58: {e}") from e
    if len(raw) != 32:
        raise MalformedCredential(f"Expected a 32 byte ed25519 public key, got {len(raw)} bytes")
    return VerifyKey(raw)


def verify_credential(credential: SignedCredential, expected_account_id: Optional[str] = None) -> bool:
    """
    Check that a credential belongs to the expected account and that its signature is valid.

    The account comparison happens first, so a mismatch is reported without
    touching the signature. A bad signature yields False; undecodable fields
    raise MalformedCredential.
    """
    if expected_account_id and expected_account_id != credential.account_id:
        logger.error(
            f"Account mismatch: signed message has account {credential.account_id}, "
            f"but provided account was {expected_account_id}"
        )
        return False

    digest = hash_payload(credential.payload())
    verify_key = parse_public_key(credential.public_key)
    signature = b64decode_lenient(credential.signature, "signature")

    try:
        verify_key.verify(digest, signature)
        return True
    except BadSignatureError:
        return False
    except ValueError as e:
        # Wrong signature length
        logger.debug(f"Signature rejected: {e}")
        return False


def build_sign_url(sign_url_base: str, message: str, callback_url: str, nonce: str, post_endpoint: str) -> str:
    params = {
        "message": message,
        "callbackUrl": callback_url,
        "nonce": nonce,
        "postEndpoint": post_endpoint,
    }
    return f"{sign_url_base}?{urlencode(params, quote_via=quote, safe='')}"


def bind_listener_socket(host: str, port: int) -> socket.socket:
    """Bind the handshake port, failing with PortInUseError if someone else holds it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    if sys.platform != "win32":
        # Allow rebinding over TIME_WAIT; a live listener still blocks the bind
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno in (errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)):
            raise PortInUseError(port) from e
        raise
    sock.listen(16)
    sock.setblocking(False)
    return sock


class HandshakeListener:
    """One-shot callback endpoint that receives the signed credential from the wallet page."""

    def __init__(self, future: "asyncio.Future[SignedCredential]"):
        self.future = future

    def _resolve(self, credential: SignedCredential):
        if not self.future.done():
            self.future.set_result(credential)

    def _reject(self, error: Exception):
        if not self.future.done():
            self.future.set_exception(error)

    def create_app(self) -> FastAPI:
        app = FastAPI(title="agenttunnel handshake", docs_url=None, redoc_url=None, openapi_url=None)

        @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
        async def receive(request: Request, path: str = ""):
            if request.method == "OPTIONS":
                return Response(status_code=204, headers=CORS_HEADERS)

            if request.method == "POST":
                body = await request.body()
                try:
                    credential = SignedCredential.from_json(body)
                except MalformedCredential as e:
                    logger.error(f"Error parsing signed message: {e}")
                    self._reject(e)
                    return JSONResponse({"error": "Invalid JSON"}, status_code=400, headers=CORS_HEADERS)

                self._resolve(credential)
                return JSONResponse({"message": "Signed message received"}, headers=CORS_HEADERS)

            self._reject(HandshakeRejected(f"Method Not Allowed: {request.method}"))
            return JSONResponse({"error": "Method Not Allowed"}, status_code=405, headers=CORS_HEADERS)

        return app


class AuthBroker:
    """Hands out a cached credential or obtains a new one through the browser signing flow."""

    def __init__(self, store: StateStore, urls: BitteUrls, port: Optional[int] = None,
                 host: str = "127.0.0.1", open_browser: Callable[[str], bool] = webbrowser.open,
                 message: str = Config.SIGN_MESSAGE):
        self.store = store
        self.urls = urls
        self.port = Config.SIGN_MESSAGE_PORT if port is None else port
        self.host = host
        self.open_browser = open_browser
        self.message = message
        self._handshake_active = False

    def get_credential(self, expected_account_id: Optional[str] = None) -> Optional[SignedCredential]:
        raw = self.store.get(Config.CREDENTIAL_KEY)
        if not raw:
            return None

        try:
            credential = SignedCredential.from_json(raw)
            if expected_account_id and not self.verify(credential, expected_account_id):
                return None
        except MalformedCredential as e:
            logger.warning(f"Ignoring cached credential: {e}")
            return None

        return credential

    def store_credential(self, credential: SignedCredential):
        """Persist ``credential`` as the cached registry API key."""
        self.store.set(Config.CREDENTIAL_KEY, credential.to_json())

    def verify(self, credential: SignedCredential, expected_account_id: Optional[str] = None) -> bool:
        return verify_credential(credential, expected_account_id)

    async def run_handshake(self, sign_url_base: Optional[str] = None,
                            success_url: Optional[str] = None) -> SignedCredential:
        """
        Drive the browser signing flow and wait for the wallet to post the credential back.

        There is no timeout: wrap the call in ``asyncio.wait_for`` for a bounded wait.
        """
        if self._handshake_active:
            raise PortInUseError(self.port)

        sign_url_base = sign_url_base or self.urls.sign_message_url
        success_url = success_url or self.urls.sign_message_success_url

        sock = bind_listener_socket(self.host, self.port)
        self._handshake_active = True
        loop = asyncio.get_running_loop()
        listener = HandshakeListener(loop.create_future())

        config = uvicorn.Config(
            app=listener.create_app(),
            log_level="warning",
            loop="asyncio",
            access_log=False,
        )
        server = uvicorn.Server(config)
        # Signals belong to the orchestrator
        server.install_signal_handlers = lambda: None
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))

        try:
            while not server.started:
                if serve_task.done():
                    raise HandshakeRejected("Handshake listener failed to start")
                await asyncio.sleep(0.01)

            bound_port = sock.getsockname()[1]
            post_endpoint = f"http://localhost:{bound_port}"
            nonce = secrets.token_hex(16)
            sign_url = build_sign_url(sign_url_base, self.message, success_url, nonce, post_endpoint)

            logger.info(f"Waiting for signed message on {post_endpoint}")
            try:
                opened = self.open_browser(sign_url)
            except Exception as e:
                raise BrowserLaunchError(f"Failed to open the browser: {e}") from e
            if opened is False:
                raise BrowserLaunchError(f"Failed to open the browser, visit {sign_url} manually")

            return await listener.future
        finally:
            server.should_exit = True
            try:
                await asyncio.wait_for(serve_task, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                serve_task.cancel()
            except Exception as e:
                logger.error(f"Handshake listener error: {e}")
            sock.close()
            self._handshake_active = False
            logger.info("Temporary server closed")

    async def authenticate_or_create(self) -> SignedCredential:
        """Return the cached credential, or run the handshake and persist the result."""
        credential = self.get_credential()
        if credential:
            logger.info("Already authenticated.")
            return credential

        logger.info("Not authenticated. Redirecting to Bitte wallet for signing...")
        credential = await self.run_handshake()

        try:
            if not self.verify(credential):
                logger.warning("Message verification failed")
        except MalformedCredential as e:
            logger.warning(f"Message verification failed: {e}")

        self.store_credential(credential)
        logger.info("New key created and stored successfully.")
        return credential
