"""Health check endpoint."""

from typing import Any, Optional

from bosbase.services.base import BaseService


class HealthService(BaseService):
    async def check(
        self,
        *,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        data = await self.client.send("/api/health", query=query, headers=headers)
        return data if isinstance(data, dict) else {}
