"""Two-factor enrollment schemas."""

from pydantic import BaseModel, Field


class TwoFactorCodeRequest(BaseModel):
    """Authenticator code proving possession of the enrolled secret."""

    code: str = Field(min_length=6, max_length=16)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending_confirmation: bool
    backup_codes_remaining: int


class EnrollmentResponse(BaseModel):
    """Secret and otpauth URI for QR rendering; returned only once."""

    secret: str
    provisioning_uri: str


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]
