"""Common utility functions for agenttunnel."""

from typing import Optional
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


def hostname(url: str) -> str:
    """
    Hostname portion of a URL, which doubles as the plugin id.

    Raises:
        ValueError: if the URL has no hostname
    """
    host = urlparse(url).hostname
    if not host:
        raise ValueError(f"URL has no hostname: {url!r}")
    return host


def is_binary_content(content_type: Optional[str]) -> bool:
    """
    Determine if a content type indicates binary data.

    Args:
        content_type: The content-type header value (e.g., 'application/pdf')

    Returns:
        True if the content is binary, False if it's text-based
    """
    if not content_type:
        # If no content type is provided, assume binary to be safe
        return True

    # Normalize content type (remove parameters like charset)
    base_type = content_type.split(';')[0].strip().lower()

    if base_type.startswith('text/'):
        return False

    text_types = {
        'application/x-www-form-urlencoded', 'application/graphql',
        'application/x-httpd-php', 'application/x-sh', 'application/sql',
        'message/rfc822', 'message/http',
    }
    if base_type in text_types:
        return False

    # Covers application/json, openapi+yaml, manifest+json and friends
    text_keywords = ['json', 'xml', 'javascript', 'ecmascript', 'yaml', 'csv', 'text']
    for keyword in text_keywords:
        if keyword in base_type:
            return False

    return True
