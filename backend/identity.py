import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException

logger = logging.getLogger(__name__)


class IdentityVerifier:
    """Resolves an account id from an identity-provider access token.

    Tokens are HS256 JWTs signed with the provider's JWT secret; the account
    id is the ``sub`` claim.
    """

    def __init__(self, secret: str, audience: Optional[str] = "authenticated"):
        self.secret = secret
        self.audience = audience or None

    def decode(self, token: str) -> Dict[str, Any]:
        options = {"require": ["sub", "exp"]}
        if not self.audience:
            options["verify_aud"] = False
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            logger.info("auth_token_expired")
            raise HTTPException(status_code=401, detail="Invalid authentication")
        except jwt.InvalidTokenError as exc:
            logger.info("auth_token_invalid error=%s", exc)
            raise HTTPException(status_code=401, detail="Invalid authentication")

    def verify_header(self, authorization: Optional[str]) -> str:
        if not authorization:
            raise HTTPException(status_code=401, detail="Authentication required")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise HTTPException(status_code=401, detail="Invalid authentication")
        payload = self.decode(token.strip())
        account_id = str(payload.get("sub") or "").strip()
        if not account_id:
            raise HTTPException(status_code=401, detail="Invalid authentication")
        return account_id
