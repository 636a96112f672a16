"""System preamble sent ahead of every chat completion. Pure: all inputs are explicit."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from chatrelay.memory.instructions import CustomInstruction
from chatrelay.memory.users import UserProfile

_DAYS = ("lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche")
_MONTHS = (
    "janvier",
    "février",
    "mars",
    "avril",
    "mai",
    "juin",
    "juillet",
    "août",
    "septembre",
    "octobre",
    "novembre",
    "décembre",
)


def format_french_datetime(now: datetime) -> str:
    """e.g. ``lundi 19 octobre 2026 14:30``."""
    return f"{_DAYS[now.weekday()]} {now.day:02d} {_MONTHS[now.month - 1]} {now.year} {now:%H:%M}"


def build_system_preamble(
    user: UserProfile,
    active_instruction: Optional[CustomInstruction],
    now: datetime,
) -> str:
    preamble = f"Tu es un assistant de chat. La date et l'heure actuelle est le {format_french_datetime(now)}.\n"
    preamble += f"Tu es actuellement utilisé par {user.name}.\n"
    if active_instruction is not None and active_instruction.is_active:
        if active_instruction.about_user:
            preamble += "\nÀ propos de l'utilisateur:\n" + active_instruction.about_user
        if active_instruction.preference:
            preamble += "\nPréférences de réponse:\n" + active_instruction.preference
    return preamble
