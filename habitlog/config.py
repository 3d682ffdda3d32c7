"""
Central configuration for HabitLog.

Values come from the environment. A `.env` file in the working directory is loaded
first, so local development can keep credentials out of the shell profile.

- DATA_DIR: directory for the encrypted record files.
- KEY_FILE: the Fernet key file, generated on first use.
- SEED_PASSWORD: optional password for the seeded demo admin and client.
- GEMINI_API_KEY / GEMINI_MODEL_NAME: the language model used to extract habit updates.
- NLU_TIMEOUT / STT_TIMEOUT: seconds before the extraction and transcription calls give up.
- STT_URL: the speech-to-text endpoint.
"""
# habitlog/config.py

import os

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        return float(default)


DATA_DIR: str = os.getenv("HABITLOG_DATA_DIR", "habitlog_data")
KEY_FILE: str = os.getenv("HABITLOG_KEY_FILE", "secret.key")
SEED_PASSWORD: str | None = os.getenv("HABITLOG_SEED_PASSWORD") or None
LOG_LEVEL: str = os.getenv("HABITLOG_LOG_LEVEL", "INFO").upper()

GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY") or None
GEMINI_MODEL_NAME: str = os.getenv("GEMINI_MODEL_NAME", "gemma-3-27b-it")
NLU_TIMEOUT: float = _float_env("NLU_TIMEOUT", "20")

STT_URL: str = os.getenv("STT_URL", "https://toolkit.rork.com/stt/transcribe/")
STT_TIMEOUT: float = _float_env("STT_TIMEOUT", "30")
