from datetime import datetime, timezone

from sqlalchemy import (
    Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)  # gateway txnid
    order_id = Column(String(64), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    product_info = Column(String(255), nullable=False, default="")
    buyer_name = Column(String(255), nullable=False)
    buyer_email = Column(String(255), nullable=False)
    buyer_phone = Column(String(32), nullable=False, default="")
    status = Column(String(50), nullable=False, default="pending")
    gateway_payment_id = Column(String(64), nullable=True)  # mihpayid
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    callbacks = relationship("CallbackEvent", back_populates="payment")


class CallbackEvent(Base):
    __tablename__ = "callback_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    txnid = Column(String(64), ForeignKey("payments.id"), nullable=False)
    gateway_status = Column(String(50), nullable=False)
    digest = Column(String(128), nullable=False)
    payload = Column(Text, nullable=True)
    processing_status = Column(String(50), nullable=False, default="processing")
    received_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    processed_at = Column(DateTime, nullable=True)

    payment = relationship("Payment", back_populates="callbacks")

    __table_args__ = (
        # at most one state transition per transaction and gateway status
        UniqueConstraint("txnid", "gateway_status", name="uq_callback_txnid_status"),
        Index("ix_callback_events_txnid", "txnid"),
    )
