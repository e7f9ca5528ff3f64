from sqlalchemy import BigInteger, Boolean, Column, Integer, String

from siwe_auth.db.base import Base


class Account(Base):
    """Wallet-anchored account record.

    Example:
    {
        "id": 1,
        "wallet_address": "0xd8da6bf26964af9d7eed9e03e53415d37aa96045",
        "display_name": "0xd8da...6045",
        "is_generated_name": true,
        "email": null,
        "pending_email": null,
        "created_at": 1735689600,
        "last_login": 1735689600
    }
    """

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, unique=True, index=True)  # lowercase 0x hex
    display_name = Column(String(255), nullable=False, unique=True, index=True)
    is_generated_name = Column(Boolean, nullable=False, default=True)
    email = Column(String(255), nullable=True, unique=True)  # confirmed email only
    pending_email = Column(String(255), nullable=True)  # waiting for link confirmation
    created_at = Column(BigInteger, nullable=False)
    last_login = Column(BigInteger, nullable=True)
