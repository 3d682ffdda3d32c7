"""
This module turns spoken habit reports into reviewed habit updates.

The flow is:
1. `transcribe_audio` (see `habitlog.transcription`) turns a recording into text.
2. `HabitExtractor.extract` asks Gemini for a list of proposed field updates. If the model
   cannot be reached or answers with something unusable, a coarse keyword matcher runs
   instead, so the feature degrades rather than fails.
3. A `VoiceReview` holds the proposals. The user edits or discards them, and `apply`
   merges the survivors into the day's habit record, field by field.
"""
# habitlog/voice.py

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, List, Optional

from habitlog import gemini
from habitlog.errors import ProcessingCancelled, ValidationError, VoiceProcessingError
from habitlog.models import ENERGY_FIELDS, ENERGY_MAX, ENERGY_MIN, HABIT_FIELDS, YES_NO_FIELDS, Result
from habitlog.transcription import transcribe_audio

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ('high', 'medium', 'low')

FIELD_DISPLAY_NAMES = {
    'weight_check': 'Weight Check',
    'morning_acv_water': 'Morning ACV + Water',
    'champion_workout': 'Champion Workout',
    'meal_10am': '10am Meal',
    'hunger_times': 'Hunger Times',
    'outdoor_time': 'Outdoor Time',
    'energy_level_2pm': 'Energy Level 2pm',
    'meal_6pm': '6pm Meal',
    'energy_level_8pm': 'Energy Level 8pm',
    'wim_hof': 'Wim Hof Breathing',
    'tracked_sleep': 'Tracked Sleep',
    'day_description': 'Day Description',
}

FIELD_DESCRIPTIONS = {
    'weight_check': "'yes' | 'no' (did they check their weight?)",
    'morning_acv_water': "'yes' | 'no' (did they drink ACV + 3 bottles of water in the morning?)",
    'champion_workout': "'yes' | 'no' (did they complete the champion workout?)",
    'meal_10am': 'string (what they ate at 10am)',
    'hunger_times': 'string (when they felt hungry, e.g. "noon and 7pm")',
    'outdoor_time': 'string (time spent outside, e.g. "30 minute walk")',
    'energy_level_2pm': f'integer {ENERGY_MIN}-{ENERGY_MAX} (energy level at 2pm)',
    'meal_6pm': 'string (what they ate at 6pm)',
    'energy_level_8pm': f'integer {ENERGY_MIN}-{ENERGY_MAX} (energy level at 8pm)',
    'wim_hof': "'yes' | 'no' (did they do Wim Hof breathing before bed?)",
    'tracked_sleep': "'yes' | 'no' (did they track their sleep?)",
    'day_description': 'string (general description of their day)',
}

MEAL_KEYWORDS = ('ate', 'had', 'meal', 'breakfast', 'lunch', 'dinner')
_ENERGY_PATTERN = re.compile(r'energy\D*?(\d+)')


def coerce_value(field: str, value: Any) -> Any:
    """Converts a proposed or user-edited value to the type the habit field stores.

    Raises:
        ValidationError: If the field is unknown or the value cannot be converted.
    """
    if field not in HABIT_FIELDS:
        raise ValidationError(f"Unknown habit field '{field}'")
    if value is None:
        raise ValidationError(f"{field} needs a value")
    if field in ENERGY_FIELDS:
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be a number")
        try:
            number = float(str(value).strip())
        except ValueError as e:
            raise ValidationError(f"{field} must be a number", original_error=e) from e
        if not number.is_integer() or not ENERGY_MIN <= number <= ENERGY_MAX:
            raise ValidationError(f"{field} must be a whole number from {ENERGY_MIN} to {ENERGY_MAX}")
        return int(number)
    if field in YES_NO_FIELDS:
        answer = str(value).strip().lower()
        if answer not in ('yes', 'no'):
            raise ValidationError(f"{field} must be 'yes' or 'no'")
        return answer
    return str(value).strip()


class HabitUpdate:
    """One proposed change to a habit field, as shown in the review step."""

    def __init__(self, field: str, value: Any, confidence: str, original_text: str) -> None:
        self.field = field
        self.value = value
        self.confidence = confidence
        self.original_text = original_text
        self.edited = False

    @property
    def display_name(self) -> str:
        return FIELD_DISPLAY_NAMES.get(self.field, self.field)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'display_name': self.display_name,
            'value': self.value,
            'confidence': self.confidence,
            'original_text': self.original_text,
            'edited': self.edited,
        }

    def __repr__(self) -> str:
        return f"HabitUpdate({self.field!r}, {self.value!r}, {self.confidence!r})"


def keyword_updates(text: str) -> List[HabitUpdate]:
    """Coarse keyword matching used when the language model is unavailable."""
    updates: List[HabitUpdate] = []
    lower_text = text.lower()

    if 'weight' in lower_text and ('checked' in lower_text or 'weighed' in lower_text):
        updates.append(HabitUpdate('weight_check', 'yes', 'medium', 'mentioned checking weight'))

    if 'workout' in lower_text or 'exercise' in lower_text:
        did_workout = any(word in lower_text for word in ('did', 'completed', 'finished'))
        updates.append(HabitUpdate(
            'champion_workout', 'yes' if did_workout else 'no', 'medium', 'mentioned workout'
        ))

    energy_match = _ENERGY_PATTERN.search(lower_text)
    if energy_match:
        level = int(energy_match.group(1))
        if ENERGY_MIN <= level <= ENERGY_MAX:
            updates.append(HabitUpdate('energy_level_2pm', level, 'low', f'mentioned energy level {level}'))

    if any(keyword in lower_text for keyword in MEAL_KEYWORDS):
        updates.append(HabitUpdate('day_description', text.strip(), 'low', 'mentioned food/meals'))

    return updates


class HabitExtractor:
    """Extracts habit updates from a transcript, with a keyword fallback."""

    def __init__(self, model=None, timeout: Optional[float] = None) -> None:
        """
        Args:
            model: A Gemini-style model with `generate_content`; defaults to the configured one.
            timeout: Seconds allowed for the model call; defaults to `config.NLU_TIMEOUT`.
        """
        self.model = model
        self.timeout = timeout

    def build_prompt(self, transcript: str) -> str:
        fields = "\n".join(f"- {name}: {desc}" for name, desc in FIELD_DESCRIPTIONS.items())
        return f"""
You extract habit information from voice input for a diabetes management habit tracker.
Always respond with valid JSON only.

Voice input: "{transcript}"

Habit fields and their types:
{fields}

Extract only information that is clearly mentioned in the voice input. Return a JSON array
of updates with this structure:
[
  {{
    "field": "field_name",
    "value": "extracted value",
    "confidence": "high|medium|low",
    "original_text": "relevant part of the input text"
  }}
]

Examples:
- "I checked my weight this morning" -> {{"field": "weight_check", "value": "yes", "confidence": "high", "original_text": "I checked my weight this morning"}}
- "I had oatmeal with berries at 10am" -> {{"field": "meal_10am", "value": "oatmeal with berries", "confidence": "high", "original_text": "I had oatmeal with berries at 10am"}}
- "My energy was about 8 at 2pm" -> {{"field": "energy_level_2pm", "value": 8, "confidence": "high", "original_text": "My energy was about 8 at 2pm"}}

Only include updates for information that is explicitly mentioned. Do not make assumptions.
"""

    @staticmethod
    def parse_updates(reply: Any) -> Optional[List[HabitUpdate]]:
        """Turns the model's JSON reply into updates.

        Entries that are missing an attribute, name an unknown field, carry an unknown
        confidence or hold a value the field cannot store are dropped.

        Returns:
            The updates, or None if the reply is not a JSON array at all.
        """
        if not isinstance(reply, list):
            return None
        updates = []
        for item in reply:
            if not isinstance(item, dict):
                continue
            field = item.get('field')
            confidence = item.get('confidence')
            original_text = item.get('original_text') or item.get('originalText')
            if not field or 'value' not in item or not confidence or not original_text:
                continue
            if confidence not in CONFIDENCE_LEVELS:
                continue
            try:
                value = coerce_value(field, item['value'])
            except ValidationError as e:
                logger.info("Dropping proposed update for %s: %s", field, e.message)
                continue
            updates.append(HabitUpdate(field, value, confidence, str(original_text)))
        return updates

    def extract(self, transcript: str, cancel_event: Optional[threading.Event] = None) -> List[HabitUpdate]:
        """Returns proposed updates for a transcript.

        Args:
            transcript: The transcribed utterance.
            cancel_event: If set by the time the model answers, the result is dropped.

        Raises:
            ProcessingCancelled: If `cancel_event` was set.
            VoiceProcessingError: If even the keyword fallback failed.
        """
        if not transcript or not transcript.strip():
            return []
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelled("Voice processing was cancelled")

        reply = gemini.generate_json(self.build_prompt(transcript), model=self.model, timeout=self.timeout)
        if cancel_event is not None and cancel_event.is_set():
            raise ProcessingCancelled("Voice processing was cancelled")

        updates = self.parse_updates(reply) if reply is not None else None
        if updates is not None:
            return updates

        logger.info("Falling back to keyword matching for voice input.")
        try:
            return keyword_updates(transcript)
        except Exception as e:
            raise VoiceProcessingError("Failed to process voice input", original_error=e) from e


class VoiceReview:
    """The proposals for one user and day, waiting for the user to confirm them."""

    def __init__(
        self,
        user_id: str,
        date: str,
        updates: List[HabitUpdate],
        transcript: str = '',
        base_updated_at: Optional[str] = None,
    ) -> None:
        self.user_id = user_id
        self.date = date
        self.updates = list(updates)
        self.transcript = transcript
        self.base_updated_at = base_updated_at

    def edit(self, index: int, raw_value: Any) -> HabitUpdate:
        """Replaces a proposal's value with the user's correction.

        Raises:
            ValidationError: If the value does not fit the field.
        """
        update = self.updates[index]
        update.value = coerce_value(update.field, raw_value)
        update.edited = True
        return update

    def discard(self, index: int) -> HabitUpdate:
        return self.updates.pop(index)

    def merged_fields(self) -> Dict[str, Any]:
        """Returns the surviving values by field; later proposals win."""
        fields: Dict[str, Any] = {}
        for update in self.updates:
            fields[update.field] = update.value
        return fields

    def apply(self, store, saved_by: str) -> Result:
        """Merges the surviving proposals into the stored habit record for the day.

        Fields not mentioned keep their stored values. If the record changed since the
        review was opened, the save still goes through and the store logs a warning.
        """
        fields = self.merged_fields()
        if not fields:
            return Result.ok(None, 'No changes to apply')
        current = store.get_daily_habit_by_date(self.user_id, self.date)
        habits = {name: current.get(name) for name in HABIT_FIELDS} if current else {}
        habits.update(fields)
        habits['user_id'] = self.user_id
        habits['date'] = self.date
        return store.save_daily_habits(habits, saved_by, expected_updated_at=self.base_updated_at)


def start_review(
    store,
    user_id: str,
    date: str,
    transcript: str,
    extractor: Optional[HabitExtractor] = None,
    cancel_event: Optional[threading.Event] = None,
    requested_by: Optional[str] = None,
) -> VoiceReview:
    """Extracts proposals for a transcript and opens a review against the current record."""
    current = store.get_daily_habit_by_date(user_id, date, requested_by=requested_by)
    updates = (extractor or HabitExtractor()).extract(transcript, cancel_event=cancel_event)
    return VoiceReview(
        user_id, date, updates,
        transcript=transcript,
        base_updated_at=current['updated_at'] if current else None,
    )


def process_recording(
    audio: bytes,
    store,
    user_id: str,
    date: str,
    extractor: Optional[HabitExtractor] = None,
    cancel_event: Optional[threading.Event] = None,
    requested_by: Optional[str] = None,
    **transcribe_options,
) -> VoiceReview:
    """Transcribes a recording and opens a review of the habit updates it mentions.

    Raises:
        TranscriptionError: If the recording could not be transcribed.
        ProcessingCancelled: If `cancel_event` was set while the model call was running.
        VoiceProcessingError: If no updates could be extracted at all.
    """
    transcript = transcribe_audio(audio, **transcribe_options)['text']
    return start_review(
        store, user_id, date, transcript,
        extractor=extractor, cancel_event=cancel_event, requested_by=requested_by,
    )
