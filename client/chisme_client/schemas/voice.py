from pydantic import BaseModel


class VoicePeer(BaseModel):
    user_id: str
    user_name: str = "Unknown"
    channel_id: str
    is_muted: bool = False
    is_deafened: bool = False
