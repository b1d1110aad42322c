"""
Notification Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any
from backend.app.models.notification import NotificationEvent, NotificationStatus


class NotificationResponse(BaseModel):
    id: int
    event: NotificationEvent
    order_id: Optional[int]
    title: str
    message: str
    metadata_payload: Optional[Dict[str, Any]]
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime]

    class Config:
        from_attributes = True


class DispatchResponse(BaseModel):
    sent: int
    retrying: int
    failed: int
    deferred: int


class DeadLetterResponse(BaseModel):
    id: int
    task_name: str
    error_message: str
    payload: Optional[Dict[str, Any]]
    status: str
    retry_count: int
    created_at: datetime

    class Config:
        from_attributes = True
