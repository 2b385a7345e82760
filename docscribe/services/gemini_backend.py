"""
Gemini inference backend.

Answers the gateway's ``invoke(operation, payload)`` calls with the same
envelopes a remote edge function would: ``{"success": True, ...}`` on
success and ``{"success": False, "error": {message, name, stack}}`` when
anything goes wrong while talking to the model.
"""
import json
import logging
import traceback
from typing import Any, Callable, Dict, List, Optional

import requests
from google.genai import types

from docscribe.clients.gemini_client import default_generation_config, generate_content_with_retry
from docscribe.config import config
from docscribe.models.prompt import Operation

logger = logging.getLogger(__name__)


def parse_json_text(text: str) -> Any:
    """Parse a model answer that may be wrapped in markdown code fences"""
    json_str = (text or "").strip()
    if "```json" in json_str:
        json_str = json_str.split("```json")[1].split("```")[0]
    elif "```" in json_str:
        json_str = json_str.split("```")[1].split("```")[0]
    return json.loads(json_str)


def _image_mime_type(url: str) -> str:
    path = url.split("?")[0].lower()
    if path.endswith(".png"):
        return "image/png"
    if path.endswith(".webp"):
        return "image/webp"
    if path.endswith(".pdf"):
        return "application/pdf"
    return "image/jpeg"


class GeminiBackend:
    def __init__(
        self,
        generate: Callable = generate_content_with_retry,
        session: Optional[requests.Session] = None,
        image_timeout: int = 30,
    ):
        self.generate = generate
        self.session = session or requests.Session()
        self.image_timeout = image_timeout

    def invoke(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        model = payload.get("model") or config.GEMINI_GENERATION_MODEL
        try:
            if operation == Operation.TRANSCRIBE.value:
                return {"success": True, "transcription": self._transcribe(model, payload)}
            if operation == Operation.GENERATE_SCHEMA.value:
                data = self._generate_json(model, payload["prompt"])
                return {"success": True, "schema": data.get("schema", data) if isinstance(data, dict) else data}
            if operation == Operation.EXTRACT_DATA.value:
                data = self._generate_json(model, payload["prompt"])
                if not isinstance(data, dict):
                    raise ValueError("Extraction answer is not a JSON object")
                return {"success": True, "tables": data.get("tables"), "confidence": data.get("confidence", 0)}
            return {"success": True}
        except Exception as e:
            logger.error("Gemini %s failed: %s", operation, e)
            return {
                "success": False,
                "error": {"message": str(e), "name": type(e).__name__, "stack": traceback.format_exc()},
            }

    def _image_parts(self, urls: List[str]) -> list:
        parts = []
        for url in urls:
            response = self.session.get(url, timeout=self.image_timeout)
            response.raise_for_status()
            parts.append(types.Part.from_bytes(data=response.content, mime_type=_image_mime_type(url)))
        return parts

    def _transcribe(self, model: str, payload: Dict[str, Any]) -> str:
        image_urls = payload.get("imageUrls") or []
        if not image_urls:
            raise ValueError("No page images to transcribe")

        contents = self._image_parts(image_urls) + [payload["prompt"]]
        response = self.generate(model=model, contents=contents, config=default_generation_config())
        text = response.text if response and response.text else ""
        if not text.strip():
            raise ValueError("Model returned an empty transcription")
        logger.info("Transcribed %d pages (%d characters)", len(image_urls), len(text))
        return text

    def _generate_json(self, model: str, prompt: str) -> Any:
        response = self.generate(
            model=model,
            contents=[prompt],
            config=default_generation_config(response_mime_type="application/json"),
        )
        text = response.text if response else ""
        try:
            return parse_json_text(text)
        except json.JSONDecodeError:
            logger.error("Failed to parse JSON answer (first 500 chars): %s", (text or "")[:500])
            raise
