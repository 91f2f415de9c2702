"""
Rebrickable API client for kit-enricher.

Provides single-set lookups for key resolution and the bulk CSV downloads
used to build the local catalog.

API Documentation: https://rebrickable.com/api/v3/docs/
"""

import asyncio
import gzip
import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

REBRICKABLE_API_BASE = "https://rebrickable.com/api/v3/lego"

# Rebrickable set numbers carry a version suffix; store kits map to the first
SET_VERSION_SUFFIX = "-1"


class RebrickableError(Exception):
    """A bulk download could not be fetched or decoded."""


def decode_gzip_text(data: bytes) -> str:
    """Gunzip a bulk download and decode it as UTF-8, dropping any BOM."""
    return gzip.decompress(data).decode("utf-8-sig")


class RebrickableClient:
    """
    Client for the Rebrickable API and bulk downloads.

    Set lookups are authenticated with a caller-supplied API key; bulk CSV
    downloads are public.
    """

    def __init__(
        self,
        api_base: str = REBRICKABLE_API_BASE,
        timeout_seconds: float = 15.0,
        download_timeout_seconds: float = 120.0,
    ):
        """
        Initialize the Rebrickable client.

        Args:
            api_base: Base URL of the LEGO API (without trailing slash)
            timeout_seconds: Request timeout for set lookups
            download_timeout_seconds: Request timeout for bulk downloads
        """
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout_seconds
        self.download_timeout = download_timeout_seconds

    def set_url(self, lookup_id: str) -> str:
        return f"{self.api_base}/sets/{lookup_id}{SET_VERSION_SUFFIX}/"

    async def get_set(self, lookup_id: str, api_key: str) -> dict[str, Any] | None:
        """
        Look up a set by its catalog id.

        Args:
            lookup_id: Catalog id without version suffix (e.g. "75192")
            api_key: Rebrickable API key

        Returns:
            Decoded JSON object on success, None on any non-success status.
            Transport errors and timeouts propagate as httpx exceptions.
        """
        url = self.set_url(lookup_id)
        logger.debug(f"Fetching set {lookup_id} from {url}")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                url,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"key {api_key}",
                },
                follow_redirects=True,
            )

        if response.status_code != 200:
            logger.warning(
                f"Rebrickable returned HTTP {response.status_code} for set {lookup_id}"
            )
            return None

        data = response.json()
        if not isinstance(data, dict):
            logger.warning(f"Unexpected payload for set {lookup_id}: {type(data).__name__}")
            return None
        return data

    async def download_csv_text(self, url: str) -> str:
        """
        Download a gzipped CSV file and return its decoded text.

        Raises:
            RebrickableError: on non-success status or undecodable content
        """
        # Cache-busting parameter so CDN copies are never stale
        params = {str(int(time.time() * 1000)): ""}
        logger.info(f"Downloading {url}")

        async with httpx.AsyncClient(timeout=self.download_timeout) as client:
            response = await client.get(url, params=params, follow_redirects=True)

        if response.status_code != 200:
            raise RebrickableError(f"HTTP {response.status_code} while fetching {url}")

        try:
            # Full catalog files are tens of MB; keep the event loop free
            return await asyncio.to_thread(decode_gzip_text, response.content)
        except (OSError, EOFError, UnicodeDecodeError) as e:
            raise RebrickableError(f"Could not decompress {url}: {e}") from e
