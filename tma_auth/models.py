from pydantic import BaseModel
from typing import Optional


class AuthRequest(BaseModel):
    initData: Optional[str] = None

    # only honoured when DEV_BYPASS is enabled
    mockUserId: Optional[int] = None
    mockUsername: Optional[str] = None
