"""Raw HTTP bridge to the Gemini REST API."""

from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp
from loguru import logger

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_OPENAI_BASE_URL = f"{GEMINI_API_BASE}/openai/"


class BridgeError(Exception):
    """Raised when a provider request fails; the text keeps the provider body."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class GeminiBridge:
    """
    Gemini REST bridge

    Sends already-serialised payloads and returns the response body as
    text. Classification of failures is left to the caller.
    """

    def __init__(self, base_url: str = GEMINI_API_BASE, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def native_request(self, payload: str, model: str, api_key: str) -> str:
        """
        Call ``generateContent`` for ``model``

        Args:
            payload: JSON request body
            model: model id without the ``models/`` prefix
            api_key: credential used for this call

        Returns:
            Raw response text

        Raises:
            BridgeError: on non-200 responses, timeouts and transport errors
        """
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    headers=headers,
                    data=payload.encode("utf-8"),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    body = await response.text()
                    if response.status != 200:
                        logger.debug("Gemini request failed: model={}, status={}", model, response.status)
                        raise BridgeError(f"HTTP {response.status}: {body}", status=response.status)
                    return body
        except asyncio.TimeoutError as exc:
            raise BridgeError(f"Request timed out after {self.timeout}s") from exc
        except aiohttp.ClientError as exc:
            raise BridgeError(f"Network error: {exc}") from exc

    async def native_list_models(self, api_key: str) -> str:
        """Fetch the model catalog; error documents are returned as-is."""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.base_url}/models",
                    headers={"x-goog-api-key": api_key},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    return await response.text()
        except asyncio.TimeoutError as exc:
            raise BridgeError(f"Request timed out after {self.timeout}s") from exc
        except aiohttp.ClientError as exc:
            raise BridgeError(f"Network error: {exc}") from exc
