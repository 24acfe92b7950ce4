from app.models.user import User
from app.models.refresh_token import RefreshToken
from app.models.email_verification_token import EmailVerificationToken
from app.models.password_reset_token import PasswordResetToken

__all__ = [
    "User",
    "RefreshToken",
    "EmailVerificationToken",
    "PasswordResetToken",
]
