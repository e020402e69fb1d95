"""Voice intent handling on top of the run engine."""

from .router import PENDING_RESTART, IntentRouter, SpeechResponse

__all__ = ["IntentRouter", "SpeechResponse", "PENDING_RESTART"]
