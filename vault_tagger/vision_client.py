"""
Remote vision model client (Tier 2).

Talks to an OpenAI-compatible chat completions endpoint with image inputs and
turns the reply into a Tier2Result. Transport errors are raised as typed
exceptions so the caller can count them; parse errors never raise.
"""

import asyncio
import base64
import json
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .config import Settings
from .logging import get_logger
from .models import Tier2Result, VisionAttributes
from .performance_monitor import PerformanceMonitor

MAX_TIER1_CONTEXT_TAGS = 20

SYSTEM_PROMPT = """You are the media analysis engine for Vault, a private media library application. \
You look at still frames taken from the user's own images and videos and produce metadata that helps organize the collection. \
The library may contain adult material; describe it plainly and accurately.

RULES:
- Describe what is visible: activity, poses, people and their appearance, clothing, setting, number of people.
- Respond ONLY with the JSON object below. No preamble, no markdown fences, no commentary.
- Use null for anything you cannot determine.

OUTPUT FORMAT:
{
  "title": "4-12 word descriptive title summarizing the key content",
  "description": "1-2 sentence description of what is depicted",
  "additional_tags": ["tag1", "tag2", "tag3"],
  "attributes": {
    "performer_count": null,
    "setting": null,
    "lighting": null,
    "is_pov": null,
    "is_amateur": null,
    "is_professional": null
  }
}

TAG GUIDELINES:
- Lowercase tags with spaces, not underscores: "blonde hair" not "blonde_hair".
- Prefer specific tags over generic ones.
- No meta tags such as "high resolution", "watermark", "realistic" or "photo".

TITLE GUIDELINES:
- A concise description someone would search for, for example "Blonde Woman Relaxing By Hotel Pool".
- Avoid vague titles ("Video 1", "Nice Scene") and long sentences."""


class VisionAPIError(Exception):
    """Custom exception for remote vision API errors."""
    kind = "api_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(VisionAPIError):
    kind = "rate_limited"


class InvalidCredentialsError(VisionAPIError):
    kind = "invalid_credentials"


class VisionNotConfiguredError(VisionAPIError):
    kind = "not_configured"


def is_gibberish_filename(filename: str) -> bool:
    """True when a filename carries no usable title (hashes, UUIDs, counters)."""
    name = re.sub(r"\.[^.]+$", "", filename).lower()

    if re.match(r"^[a-f0-9]{8,}$", name):
        return True
    if re.match(r"^[a-f0-9]{8}-[a-f0-9]{4}", name):
        return True
    if len(name) < 4:
        return True

    digits = sum(1 for c in name if c.isdigit())
    if digits / len(name) > 0.6 and not re.search(r"[a-z]{3,}", name):
        return True
    return False


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced top-level ``{...}`` block in free text."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_response(text: str) -> Tier2Result:
    """Parse the model reply. Anything unparseable yields an empty result."""
    logger = get_logger("vision_client")
    block = extract_json_object(text or "")
    if block is None:
        logger.warning("⚠️  No JSON object found in vision response")
        return Tier2Result()

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️  Failed to parse vision response JSON: {e}")
        return Tier2Result()
    if not isinstance(parsed, dict):
        return Tier2Result()

    tags = parsed.get("additional_tags")
    additional_tags = [t.strip() for t in tags if isinstance(t, str) and t.strip()] if isinstance(tags, list) else []

    return Tier2Result(
        title=_optional_text(parsed.get("title")),
        description=_optional_text(parsed.get("description")),
        additional_tags=additional_tags,
        attributes=_parse_attributes(parsed.get("attributes")),
    )


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_attributes(raw: Any) -> VisionAttributes:
    if not isinstance(raw, dict):
        return VisionAttributes()
    values = {}
    for name in VisionAttributes.model_fields:
        if raw.get(name) is None:
            continue
        try:
            VisionAttributes(**{name: raw[name]})
        except ValidationError:
            continue
        values[name] = raw[name]
    return VisionAttributes(**values)


class RemoteVisionAnalyzer:
    """Client for the remote multimodal model."""

    def __init__(
        self,
        settings: Settings,
        performance_monitor: Optional[PerformanceMonitor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.logger = get_logger("vision_client")
        self.base_url = settings.vision_api_url
        self.model = settings.vision_model
        self.max_frames = settings.vision_max_frames
        self.max_tokens = settings.vision_max_tokens
        self.temperature = settings.vision_temperature
        self.timeout = settings.request_timeout
        self.max_retries = settings.max_retries
        self.retry_delay = settings.retry_delay
        self.enabled = settings.tier2_enabled
        self.api_key = settings.vision_api_key
        self.performance_monitor = performance_monitor
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def configure(self, api_key: str) -> None:
        """Set credentials at runtime; a non-empty key enables Tier 2."""
        self.api_key = api_key or ""
        self.enabled = bool(self.api_key)
        if self._client is not None:
            self._client.headers["Authorization"] = f"Bearer {self.api_key}"
        self.logger.info(f"🔑 Tier 2 {'enabled' if self.enabled else 'disabled'}")

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def analyze(
        self,
        frame_paths: List[str],
        media_type: str,
        filename: str,
        tier1_labels: List[str],
    ) -> Tier2Result:
        """Ask the remote model for a title, description and missing tags."""
        if not self.is_enabled():
            raise VisionNotConfiguredError("Tier 2 not configured - missing API key")

        frames = self._encode_frames(frame_paths[:self.max_frames])
        if not frames:
            raise VisionAPIError("No valid frames to analyze")

        body = self.build_request(frames, media_type, filename, tier1_labels)
        content = await self._post_completion(body)
        result = parse_response(content)
        self.logger.debug(f"Tier 2 for {filename}: title={result.title!r}, {len(result.additional_tags)} extra tags")
        return result

    def _encode_frames(self, frame_paths: List[str]) -> List[str]:
        encoded = []
        for frame_path in frame_paths:
            path = Path(frame_path)
            if not path.is_file():
                self.logger.warning(f"⚠️  Frame not found: {frame_path}")
                continue
            data = base64.b64encode(path.read_bytes()).decode("ascii")
            encoded.append(f"data:image/jpeg;base64,{data}")
        return encoded

    def build_request(self, frames: List[str], media_type: str, filename: str, tier1_labels: List[str]) -> Dict[str, Any]:
        if is_gibberish_filename(filename):
            filename_context = f'Current filename "{filename}" is gibberish and needs a new title.'
        else:
            filename_context = f'Current filename "{filename}" may be usable.'

        tier1_list = ", ".join(tier1_labels[:MAX_TIER1_CONTEXT_TAGS])
        user_message = (
            f"Analyze this {media_type}. {filename_context}\n\n"
            f"Already detected tags from automated analysis: [{tier1_list}]\n"
            "Add tags that are MISSING from the above list.\n\n"
            "Respond with JSON only."
        )

        content: List[Dict[str, Any]] = [{"type": "image_url", "image_url": {"url": frame}} for frame in frames]
        content.append({"type": "text", "text": user_message})

        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "venice_parameters": {"include_venice_system_prompt": False},
        }

    async def _post_completion(self, body: Dict[str, Any]) -> str:
        """POST a chat completion with retry logic, returning the message text."""
        url = f"{self.base_url}/chat/completions"
        client = self._get_client()
        request_start = time.time()

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.post(url, json=body)
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    self.logger.warning(f"Request error, retrying (attempt {attempt + 1}/{self.max_retries}): {e}")
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
                    continue
                self.logger.error(f"❌ Vision request failed: {str(e)}")
                raise VisionAPIError(f"Request failed: {e}")

            if response.status_code == 429:
                raise RateLimitedError("Rate limited - please wait and try again", status_code=429)
            if response.status_code == 401:
                raise InvalidCredentialsError("Invalid API key - check your vision API key", status_code=401)
            if response.status_code >= 500 and attempt < self.max_retries:
                self.logger.warning(
                    f"⚠️  Server error {response.status_code}, retrying "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
                continue
            if response.status_code != 200:
                self.logger.error(f"❌ Vision API error {response.status_code}: {response.text[:500]}")
                raise VisionAPIError(f"API error: {response.status_code} - {response.text[:500]}", status_code=response.status_code)

            if self.performance_monitor:
                self.performance_monitor.record_api_call(time.time() - request_start)

            try:
                payload = response.json()
                return payload["choices"][0]["message"]["content"] or ""
            except (ValueError, KeyError, IndexError, TypeError):
                raise VisionAPIError("Failed to parse API response")

        raise VisionAPIError("Retries exhausted")
