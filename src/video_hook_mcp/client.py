"""Shared Gemini client pool with structured-output helpers."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from google import genai
from google.genai import types
from pydantic import BaseModel

from .config import get_config

logger = logging.getLogger(__name__)


class GeminiClient:
    """Process-wide Gemini client pool (one client per API key)."""

    _clients: dict[str, genai.Client] = {}

    @classmethod
    def get(cls, api_key: str | None = None) -> genai.Client:
        """Return (or create) the shared client for *api_key*."""
        key = api_key or get_config().gemini_api_key
        if not key:
            raise ValueError("No Gemini API key — set GEMINI_API_KEY or pass api_key explicitly")
        if key not in cls._clients:
            cls._clients[key] = genai.Client(api_key=key)
            logger.info("Created Gemini client (key …%s)", key[-4:])
        return cls._clients[key]

    @classmethod
    async def generate_structured(
        cls,
        contents: Any,
        *,
        schema: type[BaseModel],
        model: str | None = None,
        temperature: float | None = None,
        api_key: str | None = None,
    ) -> BaseModel:
        """Generate JSON constrained to *schema* and validate it.

        Thinking parts are dropped; only user-visible text is parsed.

        Raises:
            google.genai.errors.APIError: On any API-level failure.
            pydantic.ValidationError: If the response does not match *schema*.
        """
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_json_schema=schema.model_json_schema(),
        )
        if temperature is not None:
            config.temperature = temperature

        client = cls.get(api_key)
        response = await client.aio.models.generate_content(
            model=model or get_config().default_model,
            contents=contents,
            config=config,
        )

        parts = response.candidates[0].content.parts if response.candidates else []
        text_parts = [p.text for p in parts or [] if p.text and not getattr(p, "thought", False)]
        raw = "\n".join(text_parts) if text_parts else (response.text or "")
        return schema.model_validate_json(raw)

    @classmethod
    async def upload_file(
        cls,
        path: Path,
        mime_type: str,
        *,
        api_key: str | None = None,
        timeout: float = 120,
        interval: float = 2.0,
    ) -> types.File:
        """Upload via the File API and wait until the file is ACTIVE.

        Raises:
            RuntimeError: If the file enters FAILED state.
            TimeoutError: If the file doesn't become ACTIVE within timeout.
        """
        client = cls.get(api_key)
        uploaded = await client.aio.files.upload(
            file=path,
            config=types.UploadFileConfig(mime_type=mime_type),
        )
        logger.info("Uploaded %s → %s (state=%s)", path.name, uploaded.uri, uploaded.state)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        info = uploaded
        while info.state != "ACTIVE":
            if info.state == "FAILED":
                raise RuntimeError(f"File processing failed: {uploaded.name}")
            if loop.time() > deadline:
                raise TimeoutError(
                    f"File {uploaded.name} not active after {timeout}s (state: {info.state})"
                )
            await asyncio.sleep(interval)
            info = await client.aio.files.get(name=uploaded.name)
        return info

    @classmethod
    async def delete_file(cls, name: str, *, api_key: str | None = None) -> None:
        """Remove an uploaded file. Failures are logged, never raised."""
        try:
            await cls.get(api_key).aio.files.delete(name=name)
        except Exception:
            logger.warning("Could not delete uploaded file %s", name, exc_info=True)

    @classmethod
    async def close_all(cls) -> int:
        """Shut down all shared clients. Returns count closed."""
        count = 0
        for client in list(cls._clients.values()):
            try:
                await client.aio.aclose()
            except Exception:
                logger.debug("Async Gemini client close failed", exc_info=True)
            try:
                client.close()
            except Exception:
                logger.debug("Gemini client close failed", exc_info=True)
            count += 1
        cls._clients.clear()
        logger.info("Closed %d Gemini client(s)", count)
        return count
