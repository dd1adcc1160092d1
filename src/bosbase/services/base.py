"""Base services — shared client handle and generic CRUD helpers.

Learn: every CRUD call is a parameter-to-query mapping followed by
client.send(). No caching, no client-side filter validation: the server
owns those semantics.
"""

from typing import TYPE_CHECKING, Any, Optional

from bosbase.errors import ClientResponseError
from bosbase.utils import encode_path_segment

if TYPE_CHECKING:
    from bosbase.client import BosBase


def _with_options(query: Optional[dict[str, Any]], **options: Any) -> dict[str, Any]:
    """Copy `query` and add the non-empty named options."""
    params = dict(query or {})
    for key, value in options.items():
        # identity checks: 0 == False, and 0 is a real value
        if value is None or value is False or value == "":
            continue
        params[key] = value
    return params


class BaseService:
    def __init__(self, client: "BosBase"):
        self.client = client


class BaseCrudService(BaseService):
    """CRUD helpers rooted at a fixed API path."""

    def __init__(self, client: "BosBase", base_path: str):
        super().__init__(client)
        self.base_path = base_path

    def _item_path(self, item_id: str) -> str:
        return f"{self.base_path}/{encode_path_segment(item_id)}"

    async def get_list(
        self,
        page: int = 1,
        per_page: int = 30,
        *,
        skip_total: bool = False,
        filter: str = "",
        sort: str = "",
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params = _with_options(
            query,
            page=page if page > 0 else 1,
            perPage=per_page if per_page > 0 else 30,
            skipTotal=skip_total,
            filter=filter,
            sort=sort,
            expand=expand,
            fields=fields,
        )
        data = await self.client.send(self.base_path, query=params, headers=headers)
        return data if isinstance(data, dict) else {}

    async def get_full_list(
        self,
        batch: int = 500,
        *,
        filter: str = "",
        sort: str = "",
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> list[Any]:
        """Fetch every item, page by page, until a short page comes back."""
        if batch <= 0:
            raise ValueError("batch must be > 0")
        items: list[Any] = []
        page = 1
        while True:
            data = await self.get_list(
                page,
                batch,
                skip_total=True,
                filter=filter,
                sort=sort,
                expand=expand,
                fields=fields,
                query=query,
                headers=headers,
            )
            page_items = data.get("items") or []
            items.extend(page_items)
            per_page = data.get("perPage") or batch
            if len(page_items) < per_page:
                return items
            page += 1

    async def get_one(
        self,
        item_id: str,
        *,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        if not item_id or not item_id.strip():
            raise ClientResponseError(
                url=self.client.build_url(self.base_path + "/"),
                status=404,
                response={
                    "code": 404,
                    "message": "Missing required record id.",
                    "data": {},
                },
            )
        params = _with_options(query, expand=expand, fields=fields)
        data = await self.client.send(
            self._item_path(item_id), query=params, headers=headers
        )
        return data if isinstance(data, dict) else {}

    async def get_first_list_item(
        self,
        filter: str,
        *,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        data = await self.get_list(
            1,
            1,
            skip_total=True,
            filter=filter,
            expand=expand,
            fields=fields,
            query=query,
            headers=headers,
        )
        items = data.get("items") or []
        if not items:
            raise ClientResponseError(
                status=404,
                response={
                    "code": 404,
                    "message": "The requested resource wasn't found.",
                    "data": {},
                },
            )
        return items[0] if isinstance(items[0], dict) else {}

    async def create(
        self,
        body: Optional[dict[str, Any]] = None,
        *,
        files: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params = _with_options(query, expand=expand, fields=fields)
        data = await self.client.send(
            self.base_path,
            method="POST",
            body=body,
            files=files,
            query=params,
            headers=headers,
        )
        return data if isinstance(data, dict) else {}

    async def update(
        self,
        item_id: str,
        body: Optional[dict[str, Any]] = None,
        *,
        files: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        if not item_id:
            raise ValueError("item id must be set")
        params = _with_options(query, expand=expand, fields=fields)
        data = await self.client.send(
            self._item_path(item_id),
            method="PATCH",
            body=body,
            files=files,
            query=params,
            headers=headers,
        )
        return data if isinstance(data, dict) else {}

    async def delete(
        self,
        item_id: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        if not item_id:
            raise ValueError("item id must be set")
        await self.client.send(
            self._item_path(item_id),
            method="DELETE",
            body=body,
            query=query,
            headers=headers,
        )
