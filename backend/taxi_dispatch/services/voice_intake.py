"""Audio/text intake: one model call that classifies a dispatcher input into a VoiceOutput."""
from __future__ import annotations

import base64
import binascii
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel

from taxi_dispatch.core.config import Settings, get_settings
from taxi_dispatch.core.errors import ConfigurationError, InferenceError, SchemaValidationError
from taxi_dispatch.core.logging import logger
from taxi_dispatch.models.voice import VoiceInput, VoiceOutput, validate_voice_output


DATA_URI_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?P<params>(?:;[\w.+-]+=[\w.+-]+)*);base64,(?P<data>.*)$",
    re.DOTALL,
)
JSON_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(?P<body>.*?)\s*```$", re.DOTALL)

AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/x-m4a": "m4a",
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
}
# Chat completions only take these as input_audio; anything else goes through transcription.
INPUT_AUDIO_FORMATS = frozenset({"wav", "mp3"})


@dataclass
class AudioPayload:
    mime_type: str
    audio_format: str
    data_b64: str
    size_bytes: int


def parse_audio_data_uri(uri: str) -> AudioPayload:
    """Split a ``data:<mime>;base64,<data>`` URI, rejecting anything that is not non-empty audio."""
    match = DATA_URI_PATTERN.match((uri or "").strip())
    if not match:
        raise InferenceError("Audio must be a base64 data URI of the form data:<mimetype>;base64,<data>")
    mime_type = match.group("mime").lower()
    if not mime_type.startswith("audio/"):
        raise InferenceError(f"Unsupported media type '{mime_type}'; expected an audio recording")
    data = re.sub(r"\s+", "", match.group("data"))
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InferenceError("Audio payload is not valid base64") from exc
    if not raw:
        raise InferenceError("Audio payload is empty")
    audio_format = AUDIO_FORMATS.get(mime_type, mime_type.split("/", 1)[1])
    return AudioPayload(mime_type=mime_type, audio_format=audio_format, data_b64=data, size_bytes=len(raw))


def ensure_voice_output(result: Any) -> VoiceOutput:
    """Re-check whatever an intake returned; nothing reaches the resolver unvalidated."""
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return validate_voice_output(result)


class VoiceIntake(ABC):
    """Inference boundary: any provider that maps a VoiceInput to a VoiceOutput."""

    @abstractmethod
    async def infer(self, request: VoiceInput) -> VoiceOutput:
        """Classify the input; raises InferenceError or SchemaValidationError."""


class OpenAIVoiceIntake(VoiceIntake):
    """Voice intake backed by an OpenAI-compatible chat-completions endpoint."""

    SYSTEM_PROMPT = """You are an expert taxi dispatcher assistant. Decide what the dispatcher's input is asking for. It is either a new ride request (for example a recorded phone call with a customer) or a command about rides that already exist.

Intent "create": a new ride request. Extract:
- passengerPhone: the passenger's phone number
- pickupLocation and dropoffLocation
- passengerCount: number of passengers
- scheduledTime: only if a specific pickup time is mentioned, as ISO 8601
- movingFee: true only for a "moving" service
- reasoning: a brief explanation of the extracted details

Intent "manage": a command about an existing ride (e.g. "assign ride one to driver two"). Ride ids look like "ride-X" and driver ids like "driver-X"; map spoken numbers to ids ("ride one" -> "ride-1"). Fields:
- action: one of "assign" (needs rideId and driverId), "updateStatus" (needs rideId and newStatus), "cancel" or "delete" (needs rideId), "unknown" (command unclear or incomplete)
- rideId, driverId, newStatus (one of pending, assigned, in-progress, completed, cancelled) as needed
- reasoning: why this action was chosen, or what is missing

Intent "unknown": the intent cannot be determined or the audio is unclear. Give only "reasoning".

Respond with a single JSON object. Include the "intent" field and only the fields of the chosen intent."""

    def __init__(self, settings: Optional[Settings] = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client
        if self._client is None:
            api_key = self.settings.resolved_openai_api_key()
            if api_key is not None:
                self._client = AsyncOpenAI(
                    api_key=api_key,
                    base_url=self.settings.openai_base_url or None,
                    timeout=httpx.Timeout(float(self.settings.llm_timeout_seconds)),
                    max_retries=0,
                )
                logger.info("Using OpenAI-compatible provider for voice intake", model=self.settings.llm_model)
            else:
                logger.warning(
                    "Voice intake provider is not configured; set OPENAI_API_KEY or a local OPENAI_BASE_URL"
                )

    def is_configured(self) -> bool:
        return self._client is not None

    def _build_messages(
        self,
        request: VoiceInput,
        audio: Optional[AudioPayload],
        text: str,
    ) -> List[Dict[str, Any]]:
        state = (
            f"The current date and time is {datetime.now(timezone.utc).isoformat()}.\n\n"
            "Current state of the system:\n"
            f"- Rides: {json.dumps([ride.model_dump() for ride in request.rides], ensure_ascii=True)}\n"
            f"- Drivers: {json.dumps([driver.model_dump() for driver in request.drivers], ensure_ascii=True)}"
        )
        if audio is not None:
            content: List[Dict[str, Any]] = [
                {"type": "text", "text": f"{state}\n\nListen to the following audio and determine the intent."},
                {"type": "input_audio", "input_audio": {"data": audio.data_b64, "format": audio.audio_format}},
            ]
            if text:
                content.append({"type": "text", "text": f"Dispatcher note: {text}"})
            user_message: Dict[str, Any] = {"role": "user", "content": content}
        else:
            user_message = {"role": "user", "content": f'{state}\n\nDispatcher input: "{text}"'}
        return [{"role": "system", "content": self.SYSTEM_PROMPT}, user_message]

    @staticmethod
    def _decode_content(content: str) -> Any:
        body = (content or "").strip()
        fenced = JSON_FENCE_PATTERN.match(body)
        if fenced:
            body = fenced.group("body")
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise SchemaValidationError(f"Model response is not JSON: {body[:120]!r}") from exc

    async def _transcribe(self, audio: AudioPayload) -> str:
        """Speech-to-text for containers chat completions cannot take directly."""
        upload = (f"recording.{audio.audio_format}", base64.b64decode(audio.data_b64), audio.mime_type)
        try:
            transcription = await self._client.audio.transcriptions.create(
                model=self.settings.llm_transcription_model,
                file=upload,
            )
        except OpenAIError as exc:
            logger.error(
                "Audio transcription failed",
                model=self.settings.llm_transcription_model,
                audio_format=audio.audio_format,
                error=str(exc),
            )
            raise InferenceError(f"Transcription call failed: {exc}") from exc
        return (transcription.text or "").strip()

    async def infer(self, request: VoiceInput) -> VoiceOutput:
        if self._client is None:
            raise ConfigurationError("Voice intake provider unavailable. Configure OPENAI_API_KEY or OPENAI_BASE_URL.")

        audio = parse_audio_data_uri(request.audio_data_uri) if request.audio_data_uri else None
        text = (request.text or "").strip()
        source = "audio" if audio else "text"
        audio_bytes = audio.size_bytes if audio else 0
        if audio is not None and audio.audio_format not in INPUT_AUDIO_FORMATS:
            transcript = await self._transcribe(audio)
            text = f"{transcript}\n\nDispatcher note: {text}" if text else transcript
            audio = None
            source = "transcript"

        params: Dict[str, Any] = {
            "model": self.settings.llm_audio_model if audio else self.settings.llm_model,
            "messages": self._build_messages(request, audio, text),
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
        }
        if audio is None:
            params["response_format"] = {"type": "json_object"}
        else:
            params["modalities"] = ["text"]

        try:
            completion = await self._client.chat.completions.create(**params)
        except OpenAIError as exc:
            logger.error("Voice inference call failed", model=params["model"], error=str(exc))
            raise InferenceError(f"Inference call failed: {exc}") from exc

        if not completion.choices:
            raise InferenceError("Inference call returned no choices")
        content = completion.choices[0].message.content or ""
        output = validate_voice_output(self._decode_content(content))
        logger.info(
            "Voice input classified",
            intent=output.intent,
            source=source,
            audio_bytes=audio_bytes,
        )
        return output


voice_intake = OpenAIVoiceIntake()
