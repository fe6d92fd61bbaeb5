from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Float, JSON, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
PK = BigInteger().with_variant(Integer, "sqlite")

class SecurityEventRecord(Base):
    __tablename__ = "security_events"
    id = Column(PK, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False)
    user_id = Column(String(64), index=True)
    ip = Column(String(64))
    user_agent = Column(String(1000))
    details = Column(JSON)
    risk_score_contribution = Column(Integer, default=0)
    created_at = Column(DateTime, server_default=func.now())

class PaymentAttemptRecord(Base):
    __tablename__ = "payment_attempts"
    attempt_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False)
    provider_id = Column(String(32), nullable=False)
    phone_number = Column(String(32))
    status = Column(String(16), default="PENDING")  # PENDING|REVIEW|REJECTED|COMPLETED|FAILED
    risk_score = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, index=True)

class ReviewQueueRecord(Base):
    __tablename__ = "manual_review_queue"
    attempt_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    transaction_data = Column(JSON)
    risk_score = Column(Integer)
    risk_factors = Column(JSON)
    status = Column(String(16), default="PENDING")
    created_at = Column(DateTime, server_default=func.now())
