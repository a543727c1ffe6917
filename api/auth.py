from fastapi import HTTPException, Security
import os
import secrets
from fastapi.security.api_key import APIKeyHeader
from dotenv import load_dotenv

load_dotenv()
API_KEY = os.getenv("API_KEY")
APIKEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=APIKEY_NAME, auto_error=False)


async def get_api_key(api_key_header: str = Security(api_key_header)):
    """
    Guard for every ingestion route.

    Args:
        api_key_header (str): Value of the X-API-Key header, if sent

    Returns:
        str: The accepted key

    Raises:
        HTTPException: 401 when the header is missing
        HTTPException: 403 when the key does not match API_KEY, or when no
            API_KEY is configured on the server
    """
    if not api_key_header:
        raise HTTPException(status_code=401, detail="Missing API Key")
    if not API_KEY or not secrets.compare_digest(api_key_header, API_KEY):
        raise HTTPException(status_code=403, detail="Forbidden")
    return api_key_header
