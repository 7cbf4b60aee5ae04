from typing import Optional

from pydantic import BaseModel


class UserProfile(BaseModel):
    """Profile fragment sent alongside the context payload"""
    user_id: str
    first_name: Optional[str] = None
