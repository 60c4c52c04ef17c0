"""SQLAlchemy models for the payment intent journal."""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentIntentRecord(Base):
    """Latest known state of a payment intent."""
    __tablename__ = "payment_intents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    invoice_id: Mapped[int] = mapped_column(Integer, nullable=False)
    booking_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(50), nullable=False)
    external_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    manual_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    check_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    transitions: Mapped[List["IntentTransition"]] = relationship(
        "IntentTransition",
        back_populates="intent",
        cascade="all, delete-orphan",
        order_by="IntentTransition.sequence",
    )

    __table_args__ = (
        Index("ix_payment_intents_invoice_id", "invoice_id"),
        Index("ix_payment_intents_state", "state"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "booking_id": self.booking_id,
            "tenant_id": self.tenant_id,
            "amount": self.amount,
            "method": self.method,
            "state": self.state,
            "external_reference": self.external_reference,
            "manual_payment_id": self.manual_payment_id,
            "check_attempts": self.check_attempts,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class IntentTransition(Base):
    """One state transition applied to an intent."""
    __tablename__ = "intent_transitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    intent_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_intents.id"), nullable=False, index=True)

    # Position within the intent's history
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    previous_state: Mapped[str] = mapped_column(String(50), nullable=False)
    new_state: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    detail_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    intent: Mapped["PaymentIntentRecord"] = relationship("PaymentIntentRecord", back_populates="transitions")

    __table_args__ = (
        Index("ix_intent_transitions_created_at", "created_at"),
    )

    @property
    def detail(self) -> Optional[Dict[str, Any]]:
        """Get transition detail as dictionary."""
        if self.detail_json:
            return json.loads(self.detail_json)
        return None

    @detail.setter
    def detail(self, value: Optional[Dict[str, Any]]) -> None:
        """Set transition detail from dictionary."""
        if value:
            self.detail_json = json.dumps(value, default=str)
        else:
            self.detail_json = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "sequence": self.sequence,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "trigger": self.trigger,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
