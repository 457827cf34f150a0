"""Runtime settings read from the environment (and an optional .env file)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .constants import CACHE_DB_PATH, STORE_DB_PATH


@dataclass
class Settings:
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    outlook_client_id: str = ""
    outlook_client_secret: str = ""
    outlook_redirect_uri: str = ""
    outlook_tenant: str = "common"
    db_path: Path = STORE_DB_PATH
    cache_path: Path = CACHE_DB_PATH
    max_workers: int = 4

    @classmethod
    def from_env(cls, dotenv: bool = True) -> Settings:
        """Build settings from environment variables.

        When ``dotenv`` is true a ``.env`` file in the working directory is
        loaded first; variables already set in the environment win.
        """
        if dotenv:
            load_dotenv()

        return cls(
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            google_redirect_uri=os.getenv("GOOGLE_REDIRECT_URI", ""),
            outlook_client_id=os.getenv("OUTLOOK_CLIENT_ID", ""),
            outlook_client_secret=os.getenv("OUTLOOK_CLIENT_SECRET", ""),
            outlook_redirect_uri=os.getenv("OUTLOOK_REDIRECT_URI", ""),
            outlook_tenant=os.getenv("OUTLOOK_TENANT", "common"),
            db_path=Path(os.getenv("NEWSLETTER_SYNC_DB", str(STORE_DB_PATH))),
            cache_path=Path(os.getenv("NEWSLETTER_SYNC_CACHE_DB", str(CACHE_DB_PATH))),
            max_workers=int(os.getenv("NEWSLETTER_SYNC_MAX_WORKERS", "4")),
        )

    @property
    def gmail_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def outlook_configured(self) -> bool:
        return bool(self.outlook_client_id and self.outlook_client_secret)
