"""Provider bridge for Gemini requests."""

from dispatch.llm.gemini_bridge import GEMINI_API_BASE, BridgeError, GeminiBridge

__all__ = ['GEMINI_API_BASE', 'BridgeError', 'GeminiBridge']
