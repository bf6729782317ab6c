"""Sound cue selection for in-app alerts."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Protocol

from src.contracts.enums import NotificationSeverity, SoundType
from src.contracts.notification import NotificationPreferences

log = logging.getLogger(__name__)

SOUND_FILES = {
    SoundType.ALERT.value: "alert.mp3",
    SoundType.CHIME.value: "chime.mp3",
    SoundType.DEFAULT.value: "default.mp3",
}

_BY_SEVERITY = {
    NotificationSeverity.CRITICAL.value: SoundType.ALERT.value,
    NotificationSeverity.WARNING.value: SoundType.CHIME.value,
}


def select_sound(prefs: NotificationPreferences, severity: str) -> str | None:
    """Pick the cue for a notification, or None when sound is off.

    ``default`` follows severity (critical -> alert, warning -> chime);
    ``chime`` and ``alert`` are fixed choices.
    """
    if not prefs.sound_enabled or prefs.sound_type == SoundType.NONE.value:
        return None
    if prefs.sound_type == SoundType.DEFAULT.value:
        return _BY_SEVERITY.get(severity, SoundType.DEFAULT.value)
    return prefs.sound_type


class SoundSink(Protocol):
    def play(self, user_id: str, sound: str) -> None: ...


class LoggingSoundSink:
    """Records the last *history* cues instead of playing them; the client plays the file."""

    def __init__(self, history: int = 500) -> None:
        self._played: deque[tuple[str, str]] = deque(maxlen=history)
        self._lock = threading.Lock()

    @property
    def played(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._played)

    def play(self, user_id: str, sound: str) -> None:
        with self._lock:
            self._played.append((user_id, sound))
        log.info("Sound cue for %s: %s", user_id, SOUND_FILES.get(sound, sound))
