"""
Gemini capability clients.

Plain REST calls through `requests`, pushed onto a worker thread so the
pipeline can await them without blocking other runs.
"""
import asyncio
import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests

from .config import Config
from .errors import CapabilityError
from .interfaces import (
    ExtractionCapability,
    ExtractionRequest,
    GenerationCapability,
    GenerationRequest,
    VerificationCapability,
    VerificationRequest,
)
from .retry import Attempt

DATA_URI_PATTERN = re.compile(r"data:image/[^;]+;base64,([A-Za-z0-9+/=\s]+)")
JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


class GeminiClient:
    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def _post(self, model: str, body: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        url = f"{self.config.gemini_base_url}/models/{model}:generateContent"
        try:
            r = self.session.post(
                url,
                json=body,
                headers={"x-goog-api-key": api_key},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise CapabilityError(f"Gemini request failed: {e}") from e

        if r.status_code != 200:
            detail = r.text[:300] if r.text else r.reason
            raise CapabilityError(f"Gemini returned HTTP {r.status_code}: {detail}")
        try:
            return r.json()
        except ValueError as e:
            raise CapabilityError(f"Gemini returned a non-JSON body: {e}") from e

    async def generate_content(self, model: str, parts: List[Dict[str, Any]],
                               generation_config: Optional[Dict[str, Any]] = None,
                               api_key: Optional[str] = None, stage: str = "request") -> List[Dict[str, Any]]:
        """Return the parts of the first candidate."""
        key = api_key or self.config.gemini_api_key
        if not key:
            raise CapabilityError(f"GEMINI_API_KEY is required for {stage}")

        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config

        logging.debug(f"Gemini {stage} call: model={model}, parts={len(parts)}")
        payload = await asyncio.to_thread(self._post, model, body, key)

        candidates = payload.get("candidates") or []
        if not candidates:
            feedback = payload.get("promptFeedback", {}).get("blockReason")
            raise CapabilityError("Gemini returned no candidates" + (f" ({feedback})" if feedback else ""))
        return (candidates[0].get("content") or {}).get("parts") or []


def response_text(parts: List[Dict[str, Any]]) -> str:
    return "".join(part.get("text", "") for part in parts)


def _reject_constant(name: str):
    raise CapabilityError(f"Failed to parse JSON response: {name} is not a valid number")


def parse_json_payload(text: str) -> Dict[str, Any]:
    """Decode the first JSON object in a model answer, tolerating code fences and prose."""
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise CapabilityError("No JSON found in response")
    try:
        return json.loads(match.group(0), parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise CapabilityError(f"Failed to parse JSON response: {e}") from e


def inline_image(parts: List[Dict[str, Any]]) -> bytes:
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return base64.b64decode(inline["data"])

    match = DATA_URI_PATTERN.search(response_text(parts))
    if match:
        return base64.b64decode(re.sub(r"\s", "", match.group(1)))
    raise CapabilityError("No image data found in response")


class GeminiExtractor(ExtractionCapability):
    def __init__(self, client: GeminiClient):
        self.client = client

    async def extract(self, request: ExtractionRequest, prompt: str, attempt: Attempt,
                      api_key: Optional[str] = None) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if request.text is None and request.document:
            parts.append({"inlineData": {
                "mimeType": "application/pdf",
                "data": base64.b64encode(request.document).decode("ascii"),
            }})
        reply = await self.client.generate_content(
            self.client.config.extraction_model,
            parts,
            {"temperature": 0.1, "maxOutputTokens": 16000, "responseMimeType": "application/json"},
            api_key=api_key,
            stage="extraction",
        )
        return parse_json_payload(response_text(reply))


class GeminiDiagramGenerator(GenerationCapability):
    def __init__(self, client: GeminiClient):
        self.client = client

    async def generate(self, request: GenerationRequest, prompt: str, attempt: Attempt,
                       api_key: Optional[str] = None) -> bytes:
        reply = await self.client.generate_content(
            self.client.config.generation_model,
            [{"text": prompt}],
            {"responseModalities": ["TEXT", "IMAGE"]},
            api_key=api_key,
            stage="diagram generation",
        )
        return inline_image(reply)


class GeminiVerifier(VerificationCapability):
    def __init__(self, client: GeminiClient):
        self.client = client

    async def verify(self, request: VerificationRequest, prompt: str, attempt: Attempt,
                     api_key: Optional[str] = None) -> Dict[str, Any]:
        parts = [
            {"text": prompt},
            {"inlineData": {
                "mimeType": "image/png",
                "data": base64.b64encode(request.diagram).decode("ascii"),
            }},
        ]
        reply = await self.client.generate_content(
            self.client.config.verification_model,
            parts,
            {"temperature": 0.0, "responseMimeType": "application/json"},
            api_key=api_key,
            stage="verification",
        )
        return parse_json_payload(response_text(reply))
