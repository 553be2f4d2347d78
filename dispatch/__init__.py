"""AI call dispatcher: priority task queue and API key pool for Gemini."""

__version__ = "1.0.0"
