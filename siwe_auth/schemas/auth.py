from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from siwe_auth.schemas.my_base_model import CustomBaseModel
from siwe_auth.services.account_repository import IdentityRecord


class NonceResponse(CustomBaseModel):
    """Response model for nonce generation - output"""

    nonce: str = ""
    issued_at: str = ""


class VerifyRequest(BaseModel):
    """Request model for wallet verification - input validation"""

    message: str = Field(..., min_length=1, description="Sign-in message text exactly as signed")
    signature: str = Field(..., min_length=1, description="65-byte signature, 0x hex")
    address: str = Field(..., min_length=1, description="Wallet address claimed by the client")


class EmailRequest(BaseModel):
    pending_token: str = Field(..., description="Token returned by /auth/verify")
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255, description="Email address")


class UsernameRequest(BaseModel):
    pending_token: str = Field(..., description="Token returned by /auth/verify")
    username: str = Field(..., min_length=1, max_length=60, description="Chosen username")


class IdentityResponse(CustomBaseModel):
    id: int = 0
    wallet_address: str = ""
    display_name: str = ""
    is_generated_name: bool = False
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_identity(cls, record: IdentityRecord) -> "IdentityResponse":
        return cls(
            id=record.id,
            wallet_address=record.normalized_address,
            display_name=record.display_name,
            is_generated_name=record.is_generated_name,
            email=record.email,
            created_at=record.created_at,
            last_login=record.last_login,
        )


class AuthResponse(CustomBaseModel):
    """Response model for every sign-in step - output

    outcome: authenticated | needs_email | needs_username
    """

    outcome: str = ""
    identity: Optional[IdentityResponse] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    pending_token: Optional[str] = None
    next_step_url: Optional[str] = None
    name_suggestion: Optional[str] = None


class EmailSentResponse(CustomBaseModel):
    status: str = "verification_sent"
    email: str = ""


class HealthCheck(CustomBaseModel):
    status: str = "oke"
