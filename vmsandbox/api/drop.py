"""Drop-folder upload endpoint.

Lets other machines hand files to the guest by POSTing them to the host.
Each upload is written as a hidden ``.tmp`` file and renamed into place,
so the drop-folder watcher only ever sees complete files.

Endpoints:
- POST /drop: multipart upload of one or more files
- GET /health: liveness probe
"""

import logging
import os
import uuid
from pathlib import Path

from fastapi import APIRouter, FastAPI, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from vmsandbox import __version__
from vmsandbox.vm.drop_folder import PARTIAL_SUFFIX
from vmsandbox.vm.filesystem import ensure_drop_folder

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Drop"])

_CHUNK_BYTES = 1024 * 1024


class SavedFile(BaseModel):
    filename: str
    size_bytes: int = Field(..., ge=0)


class DropResponse(BaseModel):
    saved: list[SavedFile]


def validate_drop_filename(name: str | None) -> str:
    """Return ``name`` unchanged if it is a safe leaf filename, else raise 400.

    Names are never rewritten: a name with a path separator, a NUL byte,
    a leading dot or a partial-upload suffix is rejected outright.
    """
    if (
        not name
        or "/" in name
        or "\\" in name
        or "\x00" in name
        or name.startswith(".")
        or name.endswith(PARTIAL_SUFFIX)
    ):
        raise HTTPException(status_code=400, detail=f"Invalid filename: {name!r}")
    return name


@router.post(
    "/drop",
    response_model=DropResponse,
    summary="Upload files into the drop folder",
    responses={400: {"description": "Invalid filename"}},
)
async def upload_files(
    request: Request,
    files: list[UploadFile] = File(...),  # noqa: B008
) -> DropResponse:
    """Write each uploaded file atomically into the drop folder.

    All filenames are validated before anything is written.
    """
    folder: Path = request.app.state.drop_folder
    names = [validate_drop_filename(upload.filename) for upload in files]

    saved = []
    for name, upload in zip(names, files, strict=True):
        partial = folder / f".{name}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}"
        size = 0
        try:
            with open(partial, "wb") as out:
                while chunk := await upload.read(_CHUNK_BYTES):
                    out.write(chunk)
                    size += len(chunk)
            os.replace(partial, folder / name)
        except OSError as e:
            partial.unlink(missing_ok=True)
            logger.error("Failed to store drop %s: %s", name, e)
            raise HTTPException(status_code=500, detail=f"Failed to store {name}") from e
        logger.info("Received drop %s (%d bytes)", name, size)
        saved.append(SavedFile(filename=name, size_bytes=size))

    return DropResponse(saved=saved)


@router.get("/health", summary="Health Check (Liveness)")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": __version__}


def create_drop_app(drop_folder: Path) -> FastAPI:
    """Create the upload application serving ``drop_folder``.

    Args:
        drop_folder: Host drop folder (created if missing)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="vmsandbox drop",
        description="Hand files to the sandboxed VM",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.drop_folder = ensure_drop_folder(drop_folder)
    app.include_router(router)
    return app
