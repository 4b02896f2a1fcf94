# models.py
from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base


# ---------- SIMULATED LEDGER: NATIVE BALANCES ----------
class NativeAccount(Base):
    __tablename__ = "native_accounts"

    address = Column(String, primary_key=True, index=True)
    lamports = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------- SIMULATED LEDGER: TOKEN ACCOUNTS ----------
class TokenAccount(Base):
    __tablename__ = "token_accounts"

    address = Column(String, primary_key=True, index=True)
    owner = Column(String, nullable=False, index=True)
    mint = Column(String, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------- SIMULATED LEDGER: TRANSACTIONS ----------
class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    signature = Column(String, primary_key=True, index=True)
    fee_payer = Column(String, nullable=False, index=True)
    recent_blockhash = Column(String, nullable=False)
    last_valid_block_height = Column(BigInteger, nullable=False)
    block_height = Column(BigInteger, nullable=False)
    fee = Column(BigInteger, nullable=False, default=0)
    status = Column(String, nullable=False, default="confirmed")
    timestamp = Column(DateTime, default=datetime.utcnow)

    transfers = relationship("LedgerTransfer", back_populates="transaction", cascade="all, delete-orphan")


class LedgerTransfer(Base):
    __tablename__ = "ledger_transfers"

    id = Column(Integer, primary_key=True, index=True)
    signature = Column(String, ForeignKey("ledger_transactions.signature", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False)
    destination = Column(String, nullable=False, index=True)
    authority = Column(String, nullable=False)
    mint = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)

    transaction = relationship("LedgerTransaction", back_populates="transfers")


# ---------- RENTALS (assignment service) ----------
class Rental(Base):
    __tablename__ = "rentals"

    id = Column(Integer, primary_key=True, index=True)
    node_id = Column(String, nullable=False, index=True)
    renter = Column(String, nullable=False, index=True)
    miner = Column(String, nullable=False)
    transaction_signature = Column(String, unique=True, nullable=False)
    price_units = Column(BigInteger, nullable=False)
    miner_share = Column(BigInteger, nullable=False)
    treasury_share = Column(BigInteger, nullable=False)
    gateway = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)


# ---------- MINER REGISTRATIONS (node ownership; unique node_id = first registration wins) ----------
class MinerRegistration(Base):
    __tablename__ = "miner_registrations"

    id = Column(Integer, primary_key=True, index=True)
    node_id = Column(String, nullable=False, unique=True, index=True)
    wallet_address = Column(String, nullable=False, index=True)
    price_per_hour = Column(String, nullable=True)
    bandwidth = Column(String, nullable=True)
    rented_by = Column(String, nullable=True)
    gpu_model = Column(String, nullable=True)
    vram = Column(String, nullable=True)
    gateway = Column(String, nullable=True)
    status = Column(String, nullable=False, default="PENDING_VERIFICATION")
    created_at = Column(DateTime, default=datetime.utcnow)


# ---------- NODE ACTIVITY LOGS ----------
class NodeActivityLog(Base):
    __tablename__ = "node_activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    node_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow)
