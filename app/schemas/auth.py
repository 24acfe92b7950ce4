"""Request and response bodies for the auth and user endpoints."""

from pydantic import BaseModel, ConfigDict, Field

# Access token placeholder returned by register until the email is verified
PENDING_VERIFICATION = "PENDING_VERIFICATION"


class RegisterBody(BaseModel):
    email: str
    password: str
    username: str | None = None


class LoginBody(BaseModel):
    email: str
    password: str


class RefreshBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(default="", alias="refreshToken")


class LogoutBody(RefreshBody):
    pass


class ForgotPasswordBody(BaseModel):
    email: str


class ResetPasswordBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    new_password: str = Field(alias="newPassword")


class UserOut(BaseModel):
    id: int
    email: str
    username: str | None = None


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None  # seconds until access token expires
    user: UserOut
    message: str | None = None


class VerificationResult(BaseModel):
    success: bool
    already_verified: bool
    email: str | None = None
    message: str


class ResetTokenValidation(BaseModel):
    valid: bool
    message: str


class MessageResponse(BaseModel):
    message: str


class ProfileOut(BaseModel):
    id: int
    username: str | None = None
    email: str
    enabled: bool
    role: str
