"""Authentication schemas."""

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from src.schemas.receipt import Currency


class UserRegister(BaseModel):
    """User registration request."""

    email: EmailStr = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    name: str | None = Field(None, max_length=255)


class UserLogin(BaseModel):
    """User login request."""

    email: EmailStr = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)


class UserResponse(BaseModel):
    """User information response, including the credit balance."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str | None
    credits: int
    preferred_currency: str


class AuthResponse(BaseModel):
    """Authentication response with token and user info."""

    access_token: str
    token_type: str = "bearer"  # noqa: S105
    user: UserResponse


class UserPreferencesUpdate(BaseModel):
    """Update of user display preferences."""

    preferred_currency: Currency
