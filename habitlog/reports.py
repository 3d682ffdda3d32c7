"""
Reporting helpers for habit records: completion scores and CSV export.
"""
# habitlog/reports.py

from typing import Dict, Iterable

import pandas as pd

from habitlog.models import ENERGY_FIELDS, HABIT_FIELDS, YES_NO_FIELDS

COMPLETION_ENERGY_THRESHOLD = 7

CSV_COLUMNS = ['date'] + list(HABIT_FIELDS) + ['last_edited_by', 'created_at', 'updated_at', 'completion']


def completion_percentage(habit: Dict) -> int:
    """Scores a day from 0 to 100.

    Each of the five yes/no habits answered 'yes' counts once, and reaching an energy
    level of at least 7 at either check-in counts once more.
    """
    checks = len(YES_NO_FIELDS) + 1
    completed = sum(1 for name in YES_NO_FIELDS if habit.get(name) == 'yes')
    if any((habit.get(name) or 0) >= COMPLETION_ENERGY_THRESHOLD for name in ENERGY_FIELDS):
        completed += 1
    return round(completed / checks * 100)


def habits_to_csv(habits: Iterable[Dict]) -> str:
    """Renders habit records as CSV text with a fixed column order."""
    rows = [dict(habit, completion=completion_percentage(habit)) for habit in habits]
    habits_df = pd.DataFrame(rows)
    # Ensure all desired columns exist before exporting.
    for col in CSV_COLUMNS:
        if col not in habits_df.columns:
            habits_df[col] = None
    # Keep energy levels as whole numbers even when some days have none.
    for col in ENERGY_FIELDS:
        habits_df[col] = habits_df[col].astype('Int64')
    return habits_df[CSV_COLUMNS].to_csv(index=False)


def export_habits_csv(store, user_id: str, requested_by: str | None = None) -> str:
    """Exports every habit record of a user, newest first, as CSV text."""
    total = store.get_daily_habits(user_id, page=1, limit=1, requested_by=requested_by).total
    page = store.get_daily_habits(user_id, page=1, limit=max(total, 1), requested_by=requested_by)
    return habits_to_csv(page.data)
