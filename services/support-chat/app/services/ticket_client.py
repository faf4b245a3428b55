"""
Ticketing system adapter used for chat escalations
"""
import logging
import httpx
from typing import Dict, Optional, Any
from app.core.config import settings
from app.core.exceptions import TicketCreationError

logger = logging.getLogger(__name__)


class TicketClient:
    """Client for the ticketing API"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or settings.TICKETING_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.TICKETING_API_KEY
        self.client = httpx.AsyncClient(timeout=10.0)

    async def create_ticket(
        self,
        subject: str,
        description: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a ticket

        Returns:
            {"id": str}

        Raises TicketCreationError when no ticket was created.
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self.client.post(
                f"{self.base_url}/tickets",
                json={
                    "subject": subject,
                    "description": description,
                    "user_id": user_id,
                    "source": "chat_escalation"
                },
                headers=headers
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise TicketCreationError(
                f"Ticketing API returned {e.response.status_code}",
                status_code=e.response.status_code
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TicketCreationError(f"Ticketing API unreachable: {e}") from e

        ticket = data.get("ticket", data)
        ticket_id = ticket.get("id") if isinstance(ticket, dict) else None
        if not ticket_id:
            raise TicketCreationError("Ticketing API response did not contain a ticket id")

        logger.info("Created ticket %s", ticket_id)
        return {"id": str(ticket_id)}

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()


# Singleton instance
_ticket_client: Optional[TicketClient] = None


def get_ticket_client() -> TicketClient:
    """Get singleton ticket client instance"""
    global _ticket_client
    if _ticket_client is None:
        _ticket_client = TicketClient()
    return _ticket_client
