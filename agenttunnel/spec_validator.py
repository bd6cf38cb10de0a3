"""
Fetches the agent's published plugin manifest and checks its basic shape.

The manifest is an OpenAPI 3 document served at
``{base}/.well-known/ai-plugin.json``; the owning account is declared in the
``x-mb.account-id`` extension.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .config import Config
from .errors import SpecInvalid, ValidationResult

logger = logging.getLogger("agenttunnel-spec")


def check_openapi_document(document: Any) -> None:
    """Raise SpecInvalid unless ``document`` looks like an OpenAPI 3 description."""
    if not isinstance(document, dict):
        raise SpecInvalid("Spec must be a JSON object")

    version = document.get("openapi")
    if not isinstance(version, str) or not version.startswith("3."):
        raise SpecInvalid(f"Unsupported or missing openapi version: {version!r}")

    info = document.get("info")
    if not isinstance(info, dict):
        raise SpecInvalid("Spec is missing the info object")
    for key in ("title", "version"):
        if not isinstance(info.get(key), str):
            raise SpecInvalid(f"info.{key} must be a string")

    if not isinstance(document.get("paths"), dict):
        raise SpecInvalid("Spec is missing the paths object")


def extract_account_id(document: Dict[str, Any]) -> Optional[str]:
    extension = document.get("x-mb")
    if not isinstance(extension, dict):
        return None
    account_id = extension.get("account-id")
    return account_id if isinstance(account_id, str) and account_id else None


class SpecValidator:
    """Callable ``await validator(spec_url) -> ValidationResult``; never raises."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None,
                 attempts: int = Config.FETCH_ATTEMPTS, retry_delay: float = Config.FETCH_RETRY_DELAY):
        self.http_client = http_client
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def _fetch_document(self, client: httpx.AsyncClient, spec_url: str) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = await client.get(spec_url)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                # ValueError covers bodies that are not JSON or not UTF-8
                last_error = e
                if attempt < self.attempts:
                    logger.info(f"Retrying spec fetch ({attempt}/{self.attempts})...")
                    await asyncio.sleep(self.retry_delay)
        raise SpecInvalid(f"Could not fetch spec from {spec_url}: {last_error}")

    async def __call__(self, spec_url: str) -> ValidationResult:
        try:
            if self.http_client is not None:
                document = await self._fetch_document(self.http_client, spec_url)
            else:
                async with httpx.AsyncClient(timeout=Config.REQUEST_TIMEOUT, follow_redirects=True) as client:
                    document = await self._fetch_document(client, spec_url)
            check_openapi_document(document)
        except SpecInvalid as e:
            logger.error(f"Error in OpenAPI specification fetch, validation, or parsing: {e}")
            return ValidationResult(valid=False, error=e)

        logger.info("OpenAPI specification is valid.")
        return ValidationResult(valid=True, account_id=extract_account_id(document))


async def validate_and_parse(spec_url: str, http_client: Optional[httpx.AsyncClient] = None) -> ValidationResult:
    return await SpecValidator(http_client=http_client)(spec_url)
