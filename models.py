from pydantic import BaseModel
from typing import Any, List


class RequestCodeRequest(BaseModel):
    email: str | None = None


class ValidateCodeRequest(BaseModel):
    code: Any = None


class RequestCodeResponse(BaseModel):
    message: str
    expiresIn: int
    code: str | None = None


class ValidateCodeResponse(BaseModel):
    valid: bool
    message: str


class HealthResponse(BaseModel):
    status: str
    activeCodes: int
    uptimeSeconds: int


class ActiveCode(BaseModel):
    code: str
    senderEmail: str
    remainingSeconds: int


class ActiveCodesResponse(BaseModel):
    codes: List[ActiveCode]
