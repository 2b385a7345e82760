import time
import random
import logging
from typing import Optional
from google import genai
from google.genai import types

from docscribe.config import config

logger = logging.getLogger(__name__)

_client = None

def get_gemini_client() -> genai.Client:
    """Get or create singleton Gemini client"""
    global _client
    if _client is None:
        if not config.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY environment variable not set")
        _client = genai.Client(api_key=config.GEMINI_API_KEY)
        logger.info("Gemini client initialized")
    return _client

def default_generation_config(response_mime_type: Optional[str] = None) -> types.GenerateContentConfig:
    """Generation settings shared by every pipeline operation"""
    return types.GenerateContentConfig(
        temperature=config.GEMINI_TEMPERATURE,
        max_output_tokens=config.GEMINI_MAX_OUTPUT_TOKENS,
        top_p=config.GEMINI_TOP_P,
        top_k=config.GEMINI_TOP_K,
        response_mime_type=response_mime_type,
    )

def generate_content_with_retry(
    model: str,
    contents: list,
    config: Optional[types.GenerateContentConfig] = None,
    retries: int = 5,
    initial_delay: float = 2.0
):
    """
    Call Gemini generate_content with exponential backoff for 503/429 errors.
    Wrapper around the client method.
    """
    client = get_gemini_client()
    delay = initial_delay

    for attempt in range(retries):
        try:
            return client.models.generate_content(
                model=model,
                contents=contents,
                config=config
            )
        except Exception as e:
            error_str = str(e)
            if "503" in error_str or "UNAVAILABLE" in error_str or "429" in error_str:
                if attempt == retries - 1:
                    raise  # Re-raise on last attempt

                wait_time = delay + random.uniform(0, 1)
                logger.warning(
                    "Gemini API busy (503/429). Retrying in %.2fs... (Attempt %d/%d)",
                    wait_time, attempt + 1, retries,
                )
                time.sleep(wait_time)
                delay *= 2  # Exponential backoff
            else:
                raise  # Re-raise other errors immediately
