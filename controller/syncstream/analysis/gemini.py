"""Screen analysis through the Google Gen AI SDK (google-genai)."""
from __future__ import annotations

import abc
import base64
import binascii
import logging
import re
from functools import lru_cache
from typing import Optional

from google import genai
from google.genai import errors, types

from ..config import Settings
from ..errors import AnalysisError

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(image/(?:png|jpeg|jpg));base64,")

PROMPT_TEMPLATE = """You are a helpful screen assistant. The user has provided a screenshot of their device.

User Question: "{question}"

Instructions:
1. Analyze the image or the specific part relevant to the question.
2. Provide a clear, direct, and concise answer.
3. If the user asks to solve a problem (math, code), solve it.
4. If the user asks for design details, describe them.

Answer in plain text. Do not use markdown blocks unless providing code."""


class ScreenAnalyzer(abc.ABC):
    """Answers a question about a still image. Slow and unreliable by contract."""

    @abc.abstractmethod
    async def analyze(self, image_payload: str, question: str) -> str:
        ...


@lru_cache(maxsize=4)
def get_genai_client(api_key: str, api_version: str = "") -> genai.Client:
    """Create (and cache) a GenAI client for the Gemini Developer API."""

    http_options = None
    if api_version.strip():
        http_options = types.HttpOptions(api_version=api_version.strip())
    return genai.Client(api_key=api_key, http_options=http_options)


def split_data_url(payload: str) -> tuple[bytes, str]:
    """Return raw image bytes and mime type from a data URL or bare base64."""

    match = _DATA_URL_RE.match(payload)
    mime_type = "image/png"
    if match:
        mime_type = match.group(1).replace("jpg", "jpeg")
        payload = payload[match.end():]
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError) as exc:
        raise AnalysisError("Snapshot is not a valid image.", log_message=f"bad snapshot payload: {exc}") from exc


class GeminiScreenAnalyzer(ScreenAnalyzer):
    def __init__(self, settings: Settings, *, client: Optional[genai.Client] = None) -> None:
        self.settings = settings
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is not None:
            return self._client
        if not self.settings.gemini_api_key:
            raise AnalysisError("Screen analysis is not configured.", log_message="GEMINI_API_KEY not set")
        return get_genai_client(self.settings.gemini_api_key, self.settings.gemini_api_version)

    async def analyze(self, image_payload: str, question: str) -> str:
        image_bytes, mime_type = split_data_url(image_payload)
        client = self._get_client()
        logger.info("Sending snapshot (%d bytes) to %s", len(image_bytes), self.settings.gemini_model)
        try:
            response = await client.aio.models.generate_content(
                model=self.settings.gemini_model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    PROMPT_TEMPLATE.format(question=question),
                ],
            )
        except errors.APIError as exc:
            raise AnalysisError("The analysis service failed.", log_message=f"Gemini API error {exc.code}: {exc}") from exc

        text = (response.text or "").strip()
        if not text:
            raise AnalysisError("The analysis service returned nothing.", log_message="empty Gemini response")
        return text


__all__ = ["ScreenAnalyzer", "GeminiScreenAnalyzer", "get_genai_client", "split_data_url", "PROMPT_TEMPLATE"]
