from datetime import datetime

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)


class RefreshTokenRequest(BaseModel):
    refresh_token: str | None = Field(default=None, alias="refreshToken")

    class Config:
        populate_by_name = True


class LogoutRequest(RefreshTokenRequest):
    pass


class TokenResponse(BaseModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")

    class Config:
        populate_by_name = True


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(MessageResponse):
    revoked: int


class UserResponse(BaseModel):
    id: str = Field(..., serialization_alias="userId")
    email: str
    is_active: bool = Field(..., serialization_alias="isActive")

    class Config:
        from_attributes = True


class RefreshTokenRecordResponse(BaseModel):
    id: str
    family_id: str = Field(..., serialization_alias="familyId")
    rotated_to: str | None = Field(None, serialization_alias="rotatedTo")
    revoked_at: datetime | None = Field(None, serialization_alias="revokedAt")
    expires_at: datetime = Field(..., serialization_alias="expiresAt")
    ip: str | None = None
    user_agent: str | None = Field(None, serialization_alias="userAgent")
    created_at: datetime = Field(..., serialization_alias="createdAt")

    class Config:
        from_attributes = True


class TokenFamilyResponse(BaseModel):
    family_id: str = Field(..., serialization_alias="familyId")
    user_id: str = Field(..., serialization_alias="userId")
    tokens: list[RefreshTokenRecordResponse]

    class Config:
        from_attributes = True
