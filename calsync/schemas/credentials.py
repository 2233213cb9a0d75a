# calsync/schemas/credentials.py
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Annotated, Optional, Union, Literal
from datetime import datetime
import base64


class TokenBundle(BaseModel):
    """Result of a code exchange or refresh, before encryption"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


class OAuthCredential(BaseModel):
    """Decrypted OAuth2 credential (Google)"""
    kind: Literal["oauth"] = "oauth"
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class FeedCredential(BaseModel):
    """A subscribed iCal feed; the URL is the only secret"""
    kind: Literal["feed"] = "feed"
    url: str

    def to_token(self) -> str:
        """Opaque form stored in the encrypted access-token column"""
        return base64.urlsafe_b64encode(self.url.encode()).decode()

    @classmethod
    def from_token(cls, token: str) -> "FeedCredential":
        return cls(url=base64.urlsafe_b64decode(token.encode()).decode())


ProviderCredential = Annotated[
    Union[OAuthCredential, FeedCredential],
    Field(discriminator="kind"),
]
