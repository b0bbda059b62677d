"""
Voice transcription via OpenAI Whisper.

Only used when an item has no text but carries an audio attachment.  Any
failure here is terminal for the processing run, so errors are raised as
ExternalServiceError rather than swallowed.
"""
from __future__ import annotations

import httpx
from loguru import logger
from openai import OpenAI, OpenAIError

from mosaic.config import require_api_key
from mosaic.errors import ExternalServiceError


class Transcriber:
    def __init__(
        self,
        model: str = "whisper-1",
        client: OpenAI | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._client = client or OpenAI(api_key=require_api_key("OPENAI_API_KEY"))

    @classmethod
    def from_config(cls, config: dict) -> "Transcriber":
        return cls(model=config.get("openai", {}).get("transcription_model", "whisper-1"))

    def fetch_audio(self, url: str) -> bytes:
        """Download the attached audio resource."""
        try:
            response = httpx.get(url, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("audio-download", f"Failed to download audio: {exc}") from exc
        return response.content

    def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str:
        logger.info(f"[Transcriber] Transcribing {filename} | {len(audio)} bytes")
        try:
            response = self._client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
            )
        except OpenAIError as exc:
            raise ExternalServiceError("transcription", str(exc)) from exc
        logger.info(f"[Transcriber] Transcription completed: {len(response.text)} characters")
        return response.text

    def transcribe_url(self, url: str, filename: str = "voice.ogg") -> str:
        return self.transcribe(self.fetch_audio(url), filename)
