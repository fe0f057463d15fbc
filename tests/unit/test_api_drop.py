"""Unit tests for the drop-folder upload endpoint.

Uses httpx AsyncClient over ASGITransport with a real drop folder under
tmp_path.
"""

from pathlib import Path

import pytest
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient

from vmsandbox import __version__
from vmsandbox.api.drop import create_drop_app, validate_drop_filename


@pytest.fixture
def drop_folder(tmp_path: Path) -> Path:
    return tmp_path / "drop"


@pytest.fixture
async def client(drop_folder: Path):
    app = create_drop_app(drop_folder)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


class TestValidateDropFilename:
    @pytest.mark.parametrize("name", ["report.pdf", "data 2024.csv", "tmp", "a.tmp.txt"])
    def test_accepts(self, name):
        assert validate_drop_filename(name) == name

    @pytest.mark.parametrize(
        "name",
        [None, "", "../etc/passwd", "dir/file", "dir\\file", "nul\x00byte", ".hidden", "upload.tmp"],
    )
    def test_rejects(self, name):
        with pytest.raises(HTTPException) as exc_info:
            validate_drop_filename(name)
        assert exc_info.value.status_code == 400


class TestCreateDropApp:
    def test_creates_missing_folder(self, drop_folder: Path):
        create_drop_app(drop_folder)
        assert drop_folder.is_dir()


class TestUpload:
    """POST /drop."""

    async def test_single_file(self, client: AsyncClient, drop_folder: Path):
        response = await client.post(
            "/drop",
            files={"files": ("notes.txt", b"hello drop", "text/plain")},
        )

        assert response.status_code == 200
        assert response.json() == {"saved": [{"filename": "notes.txt", "size_bytes": 10}]}
        assert (drop_folder / "notes.txt").read_bytes() == b"hello drop"

    async def test_multiple_files(self, client: AsyncClient, drop_folder: Path):
        response = await client.post(
            "/drop",
            files=[
                ("files", ("a.txt", b"a", "text/plain")),
                ("files", ("b.bin", b"\x00\x01\x02", "application/octet-stream")),
            ],
        )

        assert response.status_code == 200
        assert [f["filename"] for f in response.json()["saved"]] == ["a.txt", "b.bin"]
        assert (drop_folder / "b.bin").read_bytes() == b"\x00\x01\x02"

    async def test_no_partial_files_left_behind(self, client: AsyncClient, drop_folder: Path):
        await client.post("/drop", files={"files": ("big.dat", b"x" * 4096, "application/octet-stream")})
        assert sorted(p.name for p in drop_folder.iterdir()) == ["big.dat"]

    async def test_empty_file(self, client: AsyncClient, drop_folder: Path):
        response = await client.post("/drop", files={"files": ("empty.txt", b"", "text/plain")})
        assert response.status_code == 200
        assert response.json()["saved"][0]["size_bytes"] == 0
        assert (drop_folder / "empty.txt").exists()

    @pytest.mark.parametrize("name", [".hidden", "upload.tmp"])
    async def test_rejects_invalid_name(self, client: AsyncClient, drop_folder: Path, name: str):
        response = await client.post("/drop", files={"files": (name, b"x", "text/plain")})
        assert response.status_code == 400
        assert list(drop_folder.iterdir()) == []

    async def test_one_bad_name_rejects_whole_batch(self, client: AsyncClient, drop_folder: Path):
        response = await client.post(
            "/drop",
            files=[
                ("files", ("good.txt", b"a", "text/plain")),
                ("files", (".bad", b"b", "text/plain")),
            ],
        )
        assert response.status_code == 400
        assert list(drop_folder.iterdir()) == []

    async def test_missing_files_field(self, client: AsyncClient):
        response = await client.post("/drop")
        assert response.status_code == 422


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": __version__}
