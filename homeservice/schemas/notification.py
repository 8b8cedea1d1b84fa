from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class NotificationOut(BaseModel):
    id: str
    user_id: str
    booking_id: str
    status: str
    title: str
    message: str
    read: bool = False
    created_at: datetime
    read_at: Optional[datetime] = None
