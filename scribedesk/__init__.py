"""Transcription marketplace core: claims, job lifecycle, settlements and weekly payouts."""

__version__ = "0.1.0"
