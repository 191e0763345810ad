from pydantic import BaseModel, ConfigDict

from issuance.models.domain import RoleName


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserRead(BaseModel):
    id: int
    email: str
    name: str
    role: RoleName
    active: bool

    model_config = ConfigDict(from_attributes=True)
