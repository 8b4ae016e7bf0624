# app/schemas/user.py

from pydantic import BaseModel, ConfigDict, EmailStr

class UserCreate(BaseModel):
    tenant_id: int
    name: str
    email: EmailStr
    password: str

class UserResponse(BaseModel):
    id: int
    tenant_id: int
    name: str
    email: EmailStr
    role: str

    model_config = ConfigDict(from_attributes=True)


class UserLogin(BaseModel):
    email: EmailStr
    password: str
