"""Participant-side session and round orchestration."""
