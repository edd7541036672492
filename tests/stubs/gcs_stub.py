"""In-process stand-in for ``google.cloud.storage.Client`` with generation checks."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict

from google.api_core import exceptions as gexc


@dataclass
class StoredObject:
    data: bytes
    generation: int
    content_type: str | None = None
    metadata: Dict[str, str] = field(default_factory=dict)


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str) -> None:
        self.bucket = bucket
        self.name = name
        self.metadata: Dict[str, str] | None = None
        self.generation: int | None = None
        self.size: int | None = None

    @property
    def _client(self) -> "FakeStorageClient":
        return self.bucket.client

    def _stored(self) -> StoredObject:
        stored = self._client.objects.get((self.bucket.name, self.name))
        if stored is None:
            raise gexc.NotFound(f"gs://{self.bucket.name}/{self.name}")
        return stored

    def upload_from_string(
        self,
        data: bytes | str,
        content_type: str | None = None,
        if_generation_match: int | None = None,
    ) -> None:
        client = self._client
        if client.before_upload is not None:
            client.before_upload(self, if_generation_match)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with client.lock:
            key = (self.bucket.name, self.name)
            current = client.objects.get(key)
            current_generation = current.generation if current else 0
            if if_generation_match is not None and if_generation_match != current_generation:
                raise gexc.PreconditionFailed(f"generation {current_generation} != {if_generation_match}")
            client.generation += 1
            client.objects[key] = StoredObject(
                data=payload,
                generation=client.generation,
                content_type=content_type,
                metadata=dict(self.metadata or {}),
            )
            self.generation = client.generation
            self.size = len(payload)
        client.uploads.append((self.bucket.name, self.name, if_generation_match))

    def download_as_bytes(self) -> bytes:
        return self._stored().data

    def reload(self) -> None:
        stored = self._stored()
        self.generation = stored.generation
        self.size = len(stored.data)
        self.metadata = dict(stored.metadata)

    def patch(self) -> None:
        self._stored().metadata = dict(self.metadata or {})

    def delete(self) -> None:
        self._stored()
        del self._client.objects[(self.bucket.name, self.name)]


class FakeBucket:
    def __init__(self, client: "FakeStorageClient", name: str) -> None:
        self.client = client
        self.name = name

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)

    def copy_blob(self, blob: FakeBlob, destination_bucket: "FakeBucket", new_name: str) -> FakeBlob:
        source = blob._stored()
        copied = destination_bucket.blob(new_name)
        copied.metadata = dict(source.metadata)
        copied.upload_from_string(source.data, content_type=source.content_type)
        return copied


class FakeStorageClient:
    def __init__(self) -> None:
        self.objects: Dict[tuple[str, str], StoredObject] = {}
        self.generation = 0
        self.lock = threading.Lock()
        self.uploads: list[tuple[str, str, int | None]] = []
        self.before_upload: Callable[[FakeBlob, int | None], None] | None = None

    def bucket(self, name: str) -> FakeBucket:
        return FakeBucket(self, name)

    def list_blobs(self, bucket_name: str, prefix: str = "") -> list[FakeBlob]:
        bucket = self.bucket(bucket_name)
        return [
            bucket.blob(name)
            for (owner, name) in sorted(self.objects)
            if owner == bucket_name and name.startswith(prefix)
        ]
