"""Outbound call provider abstractions and implementations."""

from .base import CallResult, CallTrigger
from .elevenlabs import ElevenLabsCallTrigger

__all__ = ["CallResult", "CallTrigger", "ElevenLabsCallTrigger"]
