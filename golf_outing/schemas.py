"""
Request payloads for the golf outing API.

Payment metadata uses the same models: the spot list and the registrant
details are JSON-encoded into the checkout session and validated again
when the webhook hands them back.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

MAX_TEXT_LENGTH = 100


def _required_text(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("must not be blank")
    return cleaned


class SpotDetail(BaseModel):
    name: str = Field(max_length=MAX_TEXT_LENGTH)
    email: EmailStr
    phone: str = Field(max_length=40)

    @field_validator("name", "phone")
    @classmethod
    def strip_required(cls, value: str) -> str:
        return _required_text(value)


class SpotCheckoutRequest(BaseModel):
    spots: List[SpotDetail] = Field(min_length=1, max_length=4)


class SpotUpdate(SpotDetail):
    pass


class RegistrationData(BaseModel):
    name: str = Field(max_length=MAX_TEXT_LENGTH)
    email: EmailStr
    phone: str = Field(min_length=10, max_length=40)
    preferred_golfers: List[str] = Field(default_factory=list)
    is_first_year_alumni: bool = False
    pay_for_preferred: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _required_text(value)

    @field_validator("preferred_golfers", "pay_for_preferred")
    @classmethod
    def drop_blank_golfers(cls, value: List[str]) -> List[str]:
        cleaned = [golfer.strip() for golfer in value if golfer and golfer.strip()]
        if len(cleaned) > 3:
            raise ValueError("Maximum 3 preferred golfers")
        return cleaned


class RegistrationUpdateCheckoutRequest(BaseModel):
    registration_id: int
    registration: RegistrationData


class RemoveGolferRequest(BaseModel):
    golfer: str = Field(min_length=1)


class TeamCreate(BaseModel):
    name: str = Field(max_length=MAX_TEXT_LENGTH)
    is_private: bool = False
    initial_spot_ids: List[str] = Field(default_factory=list)
    whitelist: List[str] = Field(default_factory=list)


class TeamSpotRequest(BaseModel):
    spot_id: str = Field(min_length=1)


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    is_private: Optional[bool] = None
    whitelist: Optional[List[str]] = None


class WhitelistEntry(BaseModel):
    entry: str = Field(min_length=1, max_length=255)


class SponsorCheckoutRequest(BaseModel):
    name: str = Field(max_length=200)
    tier: str
    logo: Optional[str] = None
    text: Optional[str] = Field(default=None, max_length=500)
    website_link: Optional[str] = None
    free_golfers: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _required_text(value)


class SponsorUpdate(BaseModel):
    name: str = Field(max_length=200)
    logo: Optional[str] = None
    text: Optional[str] = Field(default=None, max_length=500)
    website_link: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _required_text(value)
