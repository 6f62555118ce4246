from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel

from .models import CatSighting
from .store import as_utc


class CamelModel(BaseModel):
    # Emit camelCase, accept both camelCase and snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests. Required fields stay optional here so the store reports them as
# a single ValidationError before any write.
class LocationIn(BaseModel):
    coordinates: Optional[List[float]] = None  # [longitude, latitude]
    address: Optional[str] = None


class SightingCreate(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    description: Optional[str] = None
    location: Optional[LocationIn] = None
    tags: Optional[Union[List[str], str]] = None


class SightingUpdate(SightingCreate):
    pass


class SessionRequest(BaseModel):
    id_token: str = Field(validation_alias=AliasChoices("idToken", "id_token"))


# Responses
class LocationOut(CamelModel):
    coordinates: List[float]
    address: Optional[str] = None


class SightingResponse(CamelModel):
    id: str
    name: str
    image: str
    description: Optional[str] = None
    location: LocationOut
    tags: List[str] = []
    owner_id: str
    owner_email: Optional[str] = None
    last_editor_email: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def from_row(cls, row: CatSighting) -> "SightingResponse":
        return cls(
            id=row.id,
            name=row.name,
            image=row.image,
            description=row.description,
            location=LocationOut(coordinates=[row.longitude, row.latitude], address=row.address),
            tags=list(row.tags or []),
            owner_id=row.owner_id,
            owner_email=row.owner_email,
            last_editor_email=row.last_editor_email,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DeleteResponse(BaseModel):
    message: str
    id: str


class UserOut(CamelModel):
    id: str
    email: Optional[str] = None
    is_admin: bool = False


class SessionResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut


class UploadResponse(BaseModel):
    url: str
