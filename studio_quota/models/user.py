from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None

    @staticmethod
    def normalized_email(email: Optional[str]) -> Optional[str]:
        if email and email.strip():
            return email.strip().lower()
        return None
