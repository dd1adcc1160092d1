"""File URLs and file access tokens."""

from typing import Any, Optional

from bosbase.services.base import BaseService
from bosbase.utils import encode_path_segment


class FileService(BaseService):
    def get_url(
        self,
        record: dict[str, Any],
        filename: str,
        *,
        thumb: str = "",
        token: str = "",
        download: bool = False,
        query: Optional[dict[str, Any]] = None,
    ) -> str:
        """Build the download URL for a record's file.

        Returns an empty string when the record has no id or no filename
        was given.
        """
        record_id = record.get("id") or ""
        if not record_id or not filename:
            return ""
        collection = record.get("collectionId") or record.get("collectionName") or ""
        params = dict(query or {})
        if thumb:
            params["thumb"] = thumb
        if token:
            params["token"] = token
        if download:
            params["download"] = ""
        path = "/api/files/{}/{}/{}".format(
            encode_path_segment(collection),
            encode_path_segment(record_id),
            encode_path_segment(filename),
        )
        return self.client.build_url(path, params)

    async def get_token(
        self,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> str:
        data = await self.client.send(
            "/api/files/token", method="POST", body=body, query=query, headers=headers
        )
        if isinstance(data, dict):
            return str(data.get("token") or "")
        return ""
