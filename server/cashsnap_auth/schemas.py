from pydantic import BaseModel, Field
from typing import Optional


class LoginRequest(BaseModel):
    username: str
    password: str


class CodePayload(BaseModel):
    code: str


class DeviceTraitsPayload(BaseModel):
    user_agent: Optional[str] = None  # falls back to the request's User-Agent
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone_offset: int = 0
    session_storage: bool = False
    local_storage: bool = False
    canvas_signature: str = ""


class ChallengeRequest(BaseModel):
    device: DeviceTraitsPayload = Field(default_factory=DeviceTraitsPayload)


class VerifyRequest(BaseModel):
    code: str
    remember_device: bool = False
    device_name: Optional[str] = None


class TrustCurrentDeviceRequest(BaseModel):
    device_name: Optional[str] = None


class EncryptionOracleRequest(BaseModel):
    action: str
    plaintext: Optional[str] = None
    encryptedData: Optional[str] = None
    iv: Optional[str] = None
