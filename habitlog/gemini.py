"""
This module provides an interface to the Google Gemini large language model.

It is responsible for:
- Configuring the Gemini API with the key from `habitlog.config`.
- Creating the generative model lazily, so importing HabitLog never needs credentials.
- Providing `generate_json`, which sends a prompt with an explicit timeout and parses the
  reply as JSON.

Failures are logged and reported as None; callers decide how to degrade.
"""
# habitlog/gemini.py

import json
import logging
import re

import google.generativeai as genai

from habitlog import config

logger = logging.getLogger(__name__)

_model = None

# Models often wrap JSON in a markdown code fence.
_FENCE = re.compile(r'^```(?:json)?\s*(.*?)\s*```$', re.DOTALL)


def get_model():
    """Returns the shared generative model, configuring the API on first use."""
    global _model
    if _model is None:
        genai.configure(api_key=config.GEMINI_API_KEY)
        _model = genai.GenerativeModel(config.GEMINI_MODEL_NAME)
    return _model


def parse_json_reply(text: str):
    """Parses a model reply as JSON, tolerating a surrounding code fence.

    Raises:
        json.JSONDecodeError: If the reply is not JSON.
    """
    cleaned = text.strip()
    match = _FENCE.match(cleaned)
    if match:
        cleaned = match.group(1)
    return json.loads(cleaned)


def generate_json(prompt: str, model=None, timeout: float | None = None):
    """Sends a prompt to Gemini and returns the reply parsed as JSON.

    Args:
        prompt: The full prompt text.
        model: A model object with `generate_content`; defaults to the configured Gemini model.
        timeout: Seconds before the request is abandoned; defaults to `config.NLU_TIMEOUT`.

    Returns:
        The parsed JSON value, or None if the call failed or the reply was not JSON.
    """
    model = model or get_model()
    timeout = timeout or config.NLU_TIMEOUT
    try:
        response = model.generate_content(prompt, request_options={"timeout": timeout})
        text = response.text
    except Exception as e:
        logger.warning("Gemini request failed: %s", e)
        return None
    try:
        return parse_json_reply(text)
    except json.JSONDecodeError:
        logger.warning("Gemini reply was not valid JSON: %.200s", text)
        return None
