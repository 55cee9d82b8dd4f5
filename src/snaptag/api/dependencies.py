"""Request dependencies: app state access, API key check, upload limits."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, UploadFile, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from snaptag.api.state import ModelStatus  # noqa: TC001
from snaptag.config import Settings  # noqa: TC001
from snaptag.pipeline import ClassificationPipeline  # noqa: TC001

_bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def get_model_status(request: Request) -> ModelStatus:
    model_status: ModelStatus = request.app.state.model_status
    return model_status


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when SNAPTAG_API_KEY is set."""
    expected = get_app_settings(request).api_key
    if expected is None:
        return

    supplied = b"" if credentials is None else credentials.credentials.encode()
    if not secrets.compare_digest(supplied, expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def read_image_upload(request: Request, file: UploadFile) -> bytes:
    """Read an uploaded image, rejecting empty or oversized files."""
    limit = get_app_settings(request).max_file_size
    data = await file.read(limit + 1)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Uploaded file exceeds {limit} bytes",
        )
    return data
