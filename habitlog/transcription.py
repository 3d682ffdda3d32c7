"""
Speech-to-text client.

Posts recorded audio as multipart form data to the transcription service and returns
the recognized text and language. The service is best effort; every call carries an
explicit timeout.
"""
# habitlog/transcription.py

import logging
from typing import Dict, Optional

import requests

from habitlog import config
from habitlog.errors import TranscriptionError

logger = logging.getLogger(__name__)


def transcribe_audio(
    audio: bytes,
    filename: str = "recording.webm",
    content_type: str = "audio/webm",
    url: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, str]:
    """Transcribes a recording.

    Args:
        audio: The raw audio bytes.
        filename: File name sent with the upload; the service uses its extension.
        content_type: MIME type of the audio.
        url: Transcription endpoint; defaults to `config.STT_URL`.
        timeout: Seconds before giving up; defaults to `config.STT_TIMEOUT`.

    Returns:
        A dict with the stripped `text` and the detected `language`.

    Raises:
        TranscriptionError: On network failure, an error status, a malformed reply or
            when no speech was detected.
    """
    url = url or config.STT_URL
    timeout = timeout or config.STT_TIMEOUT
    files = {"audio": (filename, audio, content_type)}
    try:
        resp = requests.post(url, files=files, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as e:
        raise TranscriptionError("Failed to transcribe audio", original_error=e) from e
    except ValueError as e:
        raise TranscriptionError("Transcription service returned malformed JSON", original_error=e) from e

    text = (data.get("text") or "").strip() if isinstance(data, dict) else ""
    if not text:
        raise TranscriptionError("No speech was detected in the recording")
    language = data.get("language") or ""
    logger.info("Transcribed %d bytes of audio (%s).", len(audio), language or "unknown language")
    return {"text": text, "language": language}
