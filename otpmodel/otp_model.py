from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone

class CodeEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    requester: str
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
