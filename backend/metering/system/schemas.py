from pydantic import BaseModel, EmailStr, Field


class BootstrapRequest(BaseModel):
    admin_id: str = Field(min_length=3, max_length=64, description="Admin user ID like u_admin")
    admin_email: EmailStr
