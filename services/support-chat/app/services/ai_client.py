"""
AI Client abstraction for generative chat answers
"""
import logging
import httpx
from typing import Dict, List, Optional, Any
from app.core.config import settings

logger = logging.getLogger(__name__)

FALLBACK_REPLY: Dict[str, Any] = {
    "response": "",
    "confidence": 0.0,
    "fallback": True,
    "model_used": "fallback"
}


class AIClient:
    """Abstraction for AI gateway operations"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.AI_GATEWAY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_GATEWAY_API_KEY
        self.client = httpx.AsyncClient(timeout=timeout or settings.AI_GATEWAY_TIMEOUT)

    async def generate_chat_response(
        self,
        conversation_id: str,
        user_message: str,
        history: List[Dict[str, str]]
    ) -> Dict[str, Any]:
        """
        Generate a chat answer from the conversation history and the new message

        Returns:
            {
                "response": str,
                "confidence": float (0.0-1.0),
                "fallback": bool,
                "model_used": str
            }

        An unreachable gateway, a non-2xx status or an unusable body all
        come back as fallback=True.
        """
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "conversation_id": conversation_id,
            "user_message": user_message,
            "history": history,
            "operation": "support_chat"
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/chat",
                json=payload,
                headers=headers
            )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("AI gateway chat call failed for conversation %s: %s", conversation_id, e)
            return dict(FALLBACK_REPLY)

        text = (result.get("response") or "").strip()
        if result.get("fallback") or not text:
            return {**FALLBACK_REPLY, "response": text}

        try:
            confidence = float(result.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5

        return {
            "response": text,
            "confidence": min(max(confidence, 0.0), 1.0),
            "fallback": False,
            "model_used": result.get("model_used", result.get("model", "unknown"))
        }

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()


# Singleton instance
_ai_client: Optional[AIClient] = None


def get_ai_client() -> AIClient:
    """Get singleton AI client instance"""
    global _ai_client
    if _ai_client is None:
        _ai_client = AIClient()
    return _ai_client
