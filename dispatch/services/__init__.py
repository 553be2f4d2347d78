from dispatch.services.ai_service import AIService

__all__ = ['AIService']
