"""Read-only mappings of the CRM/outreach tables the engine matches against."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import SourceBase


class Client(SourceBase):
    __tablename__ = "client"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_name: Mapped[str] = mapped_column(String, nullable=False)
    op_status: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ClientIntegration(SourceBase):
    __tablename__ = "client_integration"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("client.id"), nullable=False)
    integration_type: Mapped[str | None] = mapped_column(String, nullable=True)


class ConversionEvent(SourceBase):
    __tablename__ = "attribution_event"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_integration_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_integration.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    domain: Mapped[str | None] = mapped_column(String, nullable=True)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)


class LeadCategory(SourceBase):
    __tablename__ = "lead_category"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    sentiment: Mapped[str | None] = mapped_column(String, nullable=True)


class Prospect(SourceBase):
    __tablename__ = "prospect"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_integration_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_integration.id"), nullable=False
    )
    lead_email: Mapped[str | None] = mapped_column(String, nullable=True)
    company_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    lead_category_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("lead_category.id"), nullable=True
    )
    last_interaction_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EmailConversation(SourceBase):
    __tablename__ = "email_conversation"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    prospect_id: Mapped[str] = mapped_column(String, ForeignKey("prospect.id"), nullable=False)
    client_integration_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_integration.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp_email: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
