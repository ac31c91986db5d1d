"""Pydantic models for the relay's HTTP API."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class FileInfo(BaseModel):
    id: str = Field(..., description="Identifier used to delete the file")
    name: str = Field(..., description="Original file name")
    size: int = Field(..., ge=0, description="Upload size in bytes")
    type: str = Field(..., description="Mime type reported by the client")


class UploadResponse(BaseModel):
    message: str
    file: FileInfo
    units: int = Field(..., ge=1, description="Embedded units stored for the document")


class DeleteResponse(BaseModel):
    message: str


class DocumentSummary(BaseModel):
    name: str
    units: int = Field(..., ge=0)


class DocumentListResponse(BaseModel):
    documents: List[DocumentSummary]
