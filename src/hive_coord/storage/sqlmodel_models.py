"""SQLModel ORM tables for the SQLite storage adapter."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class CoordinationDocumentRow(SQLModel, table=True):
    __tablename__ = "coordination_documents"  # type: ignore[bad-override]

    version: int = Field(primary_key=True)
    document_json: str = Field(sa_column=Column(Text, nullable=False))
    committed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
