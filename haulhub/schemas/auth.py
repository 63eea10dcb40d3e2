from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class SendSmsRequest(BaseModel):
    phone: str


class VerifySmsRequest(BaseModel):
    phone: str
    code: str = Field(min_length=4, max_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class AddressInput(BaseModel):
    city: Optional[str] = None
    street: Optional[str] = None
    house_number: Optional[str] = None


class VehicleInput(BaseModel):
    # Validated together in the service so all problems are reported at once
    vehicle_capacity: Optional[int] = None
    vehicle_number: Optional[str] = None
    passport_photo_uri: Optional[str] = None
    driver_license_photo_uri: Optional[str] = None
    vehicle_registration_photo_uri: Optional[str] = None


class RegisterClientRequest(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8)
    address: Optional[AddressInput] = None


class RegisterExecutorRequest(VehicleInput):
    name: str
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8)


class AddRoleRequest(VehicleInput):
    role: str
    address: Optional[AddressInput] = None


class SwitchRoleRequest(BaseModel):
    role: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[AddressInput] = None
    vehicle_capacity: Optional[int] = None
    vehicle_number: Optional[str] = None


class PhotoRequest(BaseModel):
    uri: str


class DocumentsRequest(BaseModel):
    passport_photo_uri: Optional[str] = None
    driver_license_photo_uri: Optional[str] = None
    vehicle_registration_photo_uri: Optional[str] = None
