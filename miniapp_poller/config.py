import os
from typing import Optional

from pydantic import BaseModel


class Settings(BaseModel):
    neynar_api_key: str = ""
    neynar_api_url: str = "https://api.neynar.com"
    vercel_token: str = ""
    vercel_team_id: Optional[str] = None
    vercel_api_url: str = "https://api.vercel.com"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            neynar_api_key=os.getenv("NEYNAR_API_KEY", ""),
            neynar_api_url=os.getenv("NEYNAR_API_URL", "https://api.neynar.com"),
            vercel_token=os.getenv("VERCEL_TOKEN", ""),
            vercel_team_id=os.getenv("VERCEL_TEAM_ID") or None,
            vercel_api_url=os.getenv("VERCEL_API_URL", "https://api.vercel.com"),
        )
