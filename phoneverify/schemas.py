from __future__ import annotations
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from phoneverify_shared.phone_utils import basic_normalize


class DeviceInfoIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_agent: Optional[str] = Field(default=None, alias="userAgent", max_length=256)
    screen_resolution: Optional[str] = Field(default=None, alias="screenResolution", max_length=32)
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=32)
    platform: Optional[str] = Field(default=None, max_length=64)


class SendOtpIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(alias="phoneNumber", min_length=1, max_length=64)
    device_info: Optional[DeviceInfoIn] = Field(default=None, alias="deviceInfo")

    @field_validator("phone_number")
    @classmethod
    def strip_phone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("phoneNumber is required")
        return v


class VerifyOtpIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(alias="phoneNumber", min_length=1, max_length=64)
    otp: str = Field(min_length=1, max_length=16)
    fingerprint: Optional[str] = Field(default=None, max_length=128)

    @field_validator("otp")
    @classmethod
    def normalize_otp(cls, v: str) -> str:
        # users paste codes with spaces or type full-width digits
        v = basic_normalize(v)
        if not v:
            raise ValueError("otp is required")
        return v

