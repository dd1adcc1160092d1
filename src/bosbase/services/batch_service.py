"""Batch service — queue record writes and send them as one transaction.

Learn: nothing goes over the wire until send(). Each queued call becomes
a {method, url, headers, body} entry in the `requests` list POSTed to
/api/batch. Files ride along as multipart fields named
`requests.<index>.<field>`, so the server can pair them with their
sub-request.

    batch = pb.create_batch()
    batch.collection("posts").create({"title": "a"})
    batch.collection("posts").delete("r1")
    results = await batch.send()
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog

from bosbase.events.types import BATCH_PATH
from bosbase.services.base import BaseService, _with_options
from bosbase.utils import build_relative_url, encode_path_segment, to_serializable

if TYPE_CHECKING:
    from bosbase.client import BosBase

logger = structlog.get_logger()


@dataclass
class _BatchRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    files: dict[str, Any] = field(default_factory=dict)


class BatchService(BaseService):
    def __init__(self, client: "BosBase"):
        super().__init__(client)
        self._requests: list[_BatchRequest] = []
        self._collections: dict[str, "SubBatchService"] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def collection(self, id_or_name: str) -> "SubBatchService":
        service = self._collections.get(id_or_name)
        if service is None:
            service = SubBatchService(self, id_or_name)
            self._collections[id_or_name] = service
        return service

    def _queue(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        files: Optional[dict[str, Any]] = None,
    ) -> None:
        self._requests.append(
            _BatchRequest(
                method=method,
                url=url,
                headers=dict(headers or {}),
                body=to_serializable(body),
                files=dict(files or {}),
            )
        )

    async def send(
        self,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> list[dict[str, Any]]:
        """Send every queued request and return the per-request results.

        The queue is emptied whether or not the batch succeeds.
        """
        requests = []
        attachments: dict[str, Any] = {}
        for index, request in enumerate(self._requests):
            requests.append(
                {
                    "method": request.method,
                    "url": request.url,
                    "headers": request.headers,
                    "body": request.body,
                }
            )
            for name, value in request.files.items():
                attachments[f"requests.{index}.{name}"] = value

        payload = dict(body or {})
        payload["requests"] = requests
        self._requests = []
        logger.debug("batch.send", requests=len(requests), files=len(attachments))

        data = await self.client.send(
            BATCH_PATH,
            method="POST",
            body=payload,
            files=attachments,
            query=query,
            headers=headers,
        )
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]


class SubBatchService:
    """Record operations of one collection, queued on the parent batch."""

    def __init__(self, batch: BatchService, collection: str):
        self.batch = batch
        self.collection = collection
        self.base_path = f"/api/collections/{encode_path_segment(collection)}/records"

    def create(
        self,
        body: Optional[dict[str, Any]] = None,
        *,
        files: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        url = build_relative_url(self.base_path, _with_options(query, expand=expand, fields=fields))
        self.batch._queue("POST", url, headers, body, files)

    def upsert(
        self,
        body: Optional[dict[str, Any]] = None,
        *,
        files: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Create, or update when `body` carries the id of an existing record."""
        url = build_relative_url(self.base_path, _with_options(query, expand=expand, fields=fields))
        self.batch._queue("PUT", url, headers, body, files)

    def update(
        self,
        record_id: str,
        body: Optional[dict[str, Any]] = None,
        *,
        files: Optional[dict[str, Any]] = None,
        expand: str = "",
        fields: str = "",
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        if not record_id:
            raise ValueError("record id must be set")
        url = build_relative_url(
            f"{self.base_path}/{encode_path_segment(record_id)}",
            _with_options(query, expand=expand, fields=fields),
        )
        self.batch._queue("PATCH", url, headers, body, files)

    def delete(
        self,
        record_id: str,
        *,
        body: Optional[dict[str, Any]] = None,
        query: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        if not record_id:
            raise ValueError("record id must be set")
        url = build_relative_url(f"{self.base_path}/{encode_path_segment(record_id)}", query)
        self.batch._queue("DELETE", url, headers, body)
