import pytest
from google.api_core import exceptions as gexc

from docflow.errors import AuthorizationError, NotFoundError
from docflow.services.blob_store import BlobExistsError, GCSBlobStore, InMemoryBlobStore
from docflow.services.interfaces import UploadOptions
from tests.stubs.gcs_stub import FakeStorageClient

ONCE = UploadOptions(content_type="application/json", if_not_exists=True)


@pytest.fixture
def gcs():
    client = FakeStorageClient()
    return GCSBlobStore(archive_bucket="cold", client=client), client


@pytest.mark.asyncio
async def test_gcs_upload_uses_generation_precondition(gcs):
    store, client = gcs
    ref = await store.upload("results", "doc-1/result.json", b"{}", ONCE)

    assert ref.uri == "gs://results/doc-1/result.json"
    assert ref.size_bytes == 2
    assert ref.generation == "1"
    assert client.uploads == [("results", "doc-1/result.json", 0)]
    assert client.objects[("results", "doc-1/result.json")].content_type == "application/json"


@pytest.mark.asyncio
async def test_gcs_replayed_upload_with_same_bytes_is_idempotent(gcs):
    store, client = gcs
    await store.upload("results", "doc-1/result.json", b"{}", ONCE)
    await store.upload("results", "doc-1/result.json", b"{}", ONCE)
    assert client.objects[("results", "doc-1/result.json")].generation == 1

    with pytest.raises(BlobExistsError):
        await store.upload("results", "doc-1/result.json", b'{"changed":1}', ONCE)


@pytest.mark.asyncio
async def test_gcs_plain_upload_overwrites(gcs):
    store, client = gcs
    await store.upload("results", "a.bin", b"one")
    await store.upload("results", "a.bin", b"two", UploadOptions(metadata={"trace_id": "t-1"}))
    stored = client.objects[("results", "a.bin")]
    assert stored.data == b"two"
    assert stored.metadata == {"trace_id": "t-1"}
    assert await store.download("results", "a.bin") == b"two"


@pytest.mark.asyncio
async def test_gcs_errors_are_translated(gcs):
    store, client = gcs
    with pytest.raises(NotFoundError):
        await store.download("results", "missing.json")

    def _deny(blob, generation):
        raise gexc.Forbidden("caller lacks storage.objects.create")

    client.before_upload = _deny
    with pytest.raises(AuthorizationError):
        await store.upload("results", "a.bin", b"x")


@pytest.mark.asyncio
async def test_gcs_delete_missing_object_is_quiet(gcs):
    store, _ = gcs
    await store.delete("results", "never-written")


@pytest.mark.asyncio
async def test_gcs_move_to_archive_copies_with_retention_metadata(gcs):
    store, client = gcs
    await store.upload("intake", "docs/a.pdf", b"%PDF-1.7")

    ref = await store.move_to_archive("intake", "docs/a.pdf", retention_days=30)

    assert ref.uri == "gs://cold/intake/docs/a.pdf"
    assert ref.size_bytes == 8
    assert ("intake", "docs/a.pdf") not in client.objects
    archived = client.objects[("cold", "intake/docs/a.pdf")]
    assert archived.data == b"%PDF-1.7"
    assert archived.metadata["archived_from"] == "gs://intake/docs/a.pdf"
    assert archived.metadata["retention_days"] == "30"

    with pytest.raises(ValueError):
        await store.move_to_archive("intake", "docs/b.pdf", retention_days=0)


@pytest.mark.asyncio
async def test_in_memory_store_behaviour():
    store = InMemoryBlobStore(archive_bucket="cold")
    await store.upload("results", "r.json", b"{}", ONCE)
    await store.upload("results", "r.json", b"{}", ONCE)
    with pytest.raises(BlobExistsError):
        await store.upload("results", "r.json", b"[]", ONCE)

    with pytest.raises(NotFoundError):
        await store.download("results", "other.json")

    ref = await store.move_to_archive("results", "r.json", retention_days=7)
    assert ref.path == "results/r.json"
    assert store.metadata[("cold", "results/r.json")]["retention_days"] == "7"
    with pytest.raises(NotFoundError):
        await store.move_to_archive("results", "r.json", retention_days=7)
