from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from config import settings
from errors import ConnectionRequired
from wallet import is_valid_address

SECRET_KEY = settings.JWT_SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

# auto_error=False: a missing wallet is ConnectionRequired, not a bare 403
bearer_scheme = HTTPBearer(auto_error=False)


# =====================================================
# CREATE JWT TOKEN (wallet session)
# =====================================================
def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()

    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_wallet_token(address: str) -> str:
    return create_access_token({"wallet": address})


def decode_wallet_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
    address = payload.get("wallet")
    return address if is_valid_address(address) else None


# =====================================================
# CURRENT CONNECTED WALLET
# =====================================================
def get_optional_wallet(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    if credentials is None:
        return None
    return decode_wallet_token(credentials.credentials)


def get_current_wallet(address: Optional[str] = Depends(get_optional_wallet)) -> str:
    if address is None:
        raise ConnectionRequired()
    return address
