"""Unit tests for storing invoice photos in a local directory."""

import asyncio
from pathlib import Path

import pytest

from billscan.errors import AttachmentError
from billscan.integrations.attachments import LocalAttachmentStore
from billscan.models import PhotoBlob

pytestmark = pytest.mark.unit


@pytest.fixture
def photo() -> PhotoBlob:
    """A small JPEG-like blob."""
    return PhotoBlob(data=b"\xff\xd8\xff\xe0invoice", filename="scan.jpeg")


@pytest.mark.asyncio
async def test_upload_creates_file(tmp_path: Path, photo: PhotoBlob) -> None:
    """Verify that upload writes the bytes and returns the file path."""
    store = LocalAttachmentStore(tmp_path)

    reference = await store.upload("vendor_1_bill_2_123.jpeg", photo)

    path = Path(reference)
    assert path.is_absolute()
    assert path.name == "vendor_1_bill_2_123.jpeg"
    assert path.read_bytes() == photo.data


@pytest.mark.asyncio
async def test_upload_creates_missing_directory(tmp_path: Path, photo: PhotoBlob) -> None:
    """Verify that a non-existent photo directory is created."""
    directory = tmp_path / "photos" / "2024"
    store = LocalAttachmentStore(directory)

    assert not directory.exists()
    await store.upload("a.jpeg", photo)

    assert (directory / "a.jpeg").exists()


@pytest.mark.asyncio
async def test_upload_refuses_to_overwrite(tmp_path: Path, photo: PhotoBlob) -> None:
    store = LocalAttachmentStore(tmp_path)
    await store.upload("a.jpeg", photo)

    with pytest.raises(AttachmentError, match="a.jpeg"):
        await store.upload("a.jpeg", PhotoBlob(data=b"other"))

    assert (tmp_path / "a.jpeg").read_bytes() == photo.data


@pytest.mark.parametrize("name", ["", "../escape.jpg", "nested/a.jpg"])
@pytest.mark.asyncio
async def test_upload_rejects_paths(tmp_path: Path, photo: PhotoBlob, name: str) -> None:
    """Only plain file names are accepted."""
    store = LocalAttachmentStore(tmp_path / "photos")

    with pytest.raises(AttachmentError, match="Invalid attachment name"):
        await store.upload(name, photo)


@pytest.mark.asyncio
async def test_unwritable_directory(photo: PhotoBlob) -> None:
    """OS errors surface as AttachmentError."""
    # On Unix systems, /dev/null cannot be used as a directory
    store = LocalAttachmentStore(Path("/dev/null/photos"))

    with pytest.raises(AttachmentError):
        await store.upload("a.jpeg", photo)


@pytest.mark.asyncio
async def test_concurrent_uploads(tmp_path: Path, photo: PhotoBlob) -> None:
    """Verify that concurrent uploads with distinct names all land."""
    store = LocalAttachmentStore(tmp_path)

    references = await asyncio.gather(
        *(store.upload(f"bill_{i}.jpeg", photo) for i in range(10))
    )

    assert len(set(references)) == 10
    assert all(Path(r).read_bytes() == photo.data for r in references)


@pytest.mark.parametrize(
    ("filename", "mime_type", "extension"),
    [
        ("IMG_1.JPG", "image/jpeg", "jpg"),
        ("scan.webp", "image/webp", "webp"),
        ("capture", "image/png", "png"),
    ],
)
def test_photo_extension(filename: str, mime_type: str, extension: str) -> None:
    blob = PhotoBlob(data=b"x", filename=filename, mime_type=mime_type)
    assert blob.extension == extension
